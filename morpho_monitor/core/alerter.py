import logging
from dataclasses import dataclass
from typing import Dict

from morpho_monitor.core.health import HealthFactorResult, HealthStatus
from morpho_monitor.services.metrics import record_status_transition

logger = logging.getLogger(__name__)

# Status priority for comparison
STATUS_PRIORITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.DANGER: 2,
}


@dataclass(frozen=True)
class StatusRecord:
    status: HealthStatus
    health_factor: float


@dataclass(frozen=True)
class StatusTransition:
    """A worsening of a wallet's health status that warrants a notification."""
    address: str
    previous: HealthStatus
    current: HealthStatus
    health_factor: float

    @property
    def severity(self) -> str:
        return self.current.value

    @property
    def message(self) -> str:
        if self.current == HealthStatus.DANGER:
            return f"Health Factor dropped to {self.health_factor:.2f} - Danger level!"
        return f"Health Factor dropped to {self.health_factor:.2f} - Warning level"


class StatusTracker:
    """
    Remembers the last health status per wallet and reports transitions.

    Only worsening transitions are reported: healthy to warning, and healthy
    or warning to danger. The first observation of a wallet and infinite
    health factors (no debt) never produce a transition; an infinite value is
    not recorded either.
    """

    def __init__(self):
        self._last: Dict[str, StatusRecord] = {}

    def observe(self, wallet_address: str, result: HealthFactorResult) -> StatusTransition | None:
        if result.is_infinite:
            return None

        key = wallet_address.lower()
        previous = self._last.get(key)
        self._last[key] = StatusRecord(status=result.status, health_factor=result.value)

        if previous is None:
            return None
        if STATUS_PRIORITY[result.status] <= STATUS_PRIORITY[previous.status]:
            return None

        transition = StatusTransition(
            address=wallet_address,
            previous=previous.status,
            current=result.status,
            health_factor=result.value,
        )
        record_status_transition(transition.severity)
        logger.info(
            f"Status of {wallet_address} went {previous.status.value} -> {result.status.value} "
            f"(HF {result.value:.4f})"
        )
        return transition

    def last_status(self, wallet_address: str) -> StatusRecord | None:
        return self._last.get(wallet_address.lower())
