"""Health factor calculation for Morpho positions.

Health Factor = (Collateral Value x LLTV) / Borrow Value

Everything here is pure; simulations reuse the live formula.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Sequence

from morpho_monitor.config import HealthThresholds
from morpho_monitor.protocols.base import NormalizedPosition, format_units

INFINITE = float("inf")


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    DANGER = "danger"


@dataclass(frozen=True)
class HealthFactorResult:
    value: float
    status: HealthStatus
    liquidation_ltv: float
    collateral_usd: float
    borrow_assets_usd: float

    @property
    def is_infinite(self) -> bool:
        return math.isinf(self.value)


@dataclass(frozen=True)
class SimulationResult:
    current: HealthFactorResult
    simulated: HealthFactorResult
    collateral_change: float
    borrow_change: float
    health_factor_change: float


@dataclass(frozen=True)
class PositionTotals:
    total_collateral_usd: float
    total_borrow_usd: float
    total_supplied_usd: float
    net_supply_usd: float


def classify_health(health_factor: float, thresholds: HealthThresholds) -> HealthStatus:
    """Map a health factor onto half-open [danger, warning) bands."""
    if health_factor < thresholds.danger_threshold:
        return HealthStatus.DANGER
    if health_factor < thresholds.warning_threshold:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def _result(
    collateral_usd: float,
    borrow_usd: float,
    liquidation_ltv: float,
    thresholds: HealthThresholds,
) -> HealthFactorResult:
    if borrow_usd == 0:
        return HealthFactorResult(
            value=INFINITE,
            status=HealthStatus.HEALTHY,
            liquidation_ltv=liquidation_ltv,
            collateral_usd=collateral_usd,
            borrow_assets_usd=0.0,
        )

    health_factor = (collateral_usd * liquidation_ltv) / borrow_usd
    return HealthFactorResult(
        value=health_factor,
        status=classify_health(health_factor, thresholds),
        liquidation_ltv=liquidation_ltv,
        collateral_usd=collateral_usd,
        borrow_assets_usd=borrow_usd,
    )


def calculate_health_factor(
    position: NormalizedPosition,
    thresholds: HealthThresholds,
) -> HealthFactorResult:
    """Health factor of a single market position."""
    return _result(
        position.state.collateral_usd,
        position.state.borrow_assets_usd,
        position.market.liquidation_ltv,
        thresholds,
    )


def calculate_aggregate_health_factor(
    positions: Sequence[NormalizedPosition],
    thresholds: HealthThresholds,
) -> HealthFactorResult:
    """
    Health factor across several positions.

    The LLTV is averaged weighted by collateral value.
    """
    total_collateral = 0.0
    total_borrow = 0.0
    weighted_ltv_sum = 0.0

    for position in positions:
        collateral_usd = position.state.collateral_usd or 0.0
        borrow_usd = position.state.borrow_assets_usd or 0.0

        total_collateral += collateral_usd
        total_borrow += borrow_usd
        if collateral_usd > 0:
            weighted_ltv_sum += position.market.liquidation_ltv * collateral_usd

    average_ltv = weighted_ltv_sum / total_collateral if total_collateral > 0 else 0.0
    return _result(total_collateral, total_borrow, average_ltv, thresholds)


def health_factor(
    positions: NormalizedPosition | Sequence[NormalizedPosition],
    thresholds: HealthThresholds,
) -> HealthFactorResult:
    """Health factor of one position or the aggregate of many."""
    if isinstance(positions, NormalizedPosition):
        return calculate_health_factor(positions, thresholds)
    return calculate_aggregate_health_factor(positions, thresholds)


def _unit_price(amount: str, usd: float) -> float:
    quantity = float(amount)
    return usd / quantity if quantity > 0 else 0.0


def simulate_position(
    position: NormalizedPosition,
    collateral_amount: float,
    borrow_amount: float,
    thresholds: HealthThresholds,
    collateral_price: float | None = None,
    borrow_price: float | None = None,
) -> SimulationResult:
    """
    Re-run the health factor with changed collateral/borrow quantities.

    New quantities are priced at the unit prices implied by the position
    unless explicit prices are given (needed when a side is currently 0).
    """
    if collateral_amount < 0 or borrow_amount < 0:
        raise ValueError("Simulated amounts must be non-negative")

    state = position.state
    if collateral_price is None:
        collateral_price = _unit_price(state.collateral_amount, state.collateral_usd)
    if borrow_price is None:
        borrow_price = _unit_price(state.borrow_amount, state.borrow_assets_usd)

    simulated_position = replace(
        position,
        state=replace(
            state,
            collateral_amount=format_units(
                int(round(collateral_amount * 10 ** position.market.collateral_asset.decimals)),
                position.market.collateral_asset.decimals,
            ),
            collateral_usd=collateral_amount * collateral_price,
            borrow_amount=format_units(
                int(round(borrow_amount * 10 ** position.market.loan_asset.decimals)),
                position.market.loan_asset.decimals,
            ),
            borrow_assets_usd=borrow_amount * borrow_price,
        ),
    )

    current = calculate_health_factor(position, thresholds)
    simulated = calculate_health_factor(simulated_position, thresholds)

    if current.is_infinite or simulated.is_infinite:
        change = 0.0
    else:
        change = simulated.value - current.value

    return SimulationResult(
        current=current,
        simulated=simulated,
        collateral_change=collateral_amount - float(state.collateral_amount),
        borrow_change=borrow_amount - float(state.borrow_amount),
        health_factor_change=change,
    )


def calculate_repayment_for_target_hf(
    result: HealthFactorResult,
    target_hf: float = 1.5,
) -> float:
    """Calculate how much debt (USD) to repay to reach target health factor."""
    if result.borrow_assets_usd == 0 or result.value >= target_hf:
        return 0.0

    # target_hf = (collateral * lltv) / new_debt
    max_debt = (result.collateral_usd * result.liquidation_ltv) / target_hf
    return max(0.0, result.borrow_assets_usd - max_debt)


def calculate_deposit_for_target_hf(
    result: HealthFactorResult,
    target_hf: float = 1.5,
) -> float:
    """Calculate how much collateral (USD) to deposit to reach target health factor."""
    if result.borrow_assets_usd == 0 or result.value >= target_hf:
        return 0.0
    if result.liquidation_ltv <= 0:
        return INFINITE

    # target_hf = (new_collateral * lltv) / debt
    required_collateral = (target_hf * result.borrow_assets_usd) / result.liquidation_ltv
    return max(0.0, required_collateral - result.collateral_usd)


def calculate_safe_withdrawal(
    result: HealthFactorResult,
    target_health_factor: float = 1.5,
) -> float:
    """Calculate maximum collateral (USD) withdrawable while keeping target HF."""
    if result.borrow_assets_usd == 0:
        return result.collateral_usd
    if result.liquidation_ltv <= 0:
        return 0.0

    required_collateral = (
        target_health_factor * result.borrow_assets_usd
    ) / result.liquidation_ltv
    return max(0.0, result.collateral_usd - required_collateral)


def calculate_max_borrow(
    result: HealthFactorResult,
    target_health_factor: float = 1.5,
) -> float:
    """Calculate maximum additional borrow (USD) while maintaining target HF."""
    max_debt = (
        result.collateral_usd * result.liquidation_ltv
    ) / target_health_factor
    return max(0.0, max_debt - result.borrow_assets_usd)


def calculate_price_drop_to_liquidation(result: HealthFactorResult) -> float | None:
    """
    Percentage collateral price drop that brings the health factor to 1.0.

    Returns None when there is no debt.
    """
    if result.is_infinite or result.borrow_assets_usd == 0:
        return None
    if result.value <= 0:
        return 0.0

    # At liquidation: 1.0 = hf * (1 - drop)
    return max(0.0, (1 - (1 / result.value)) * 100)


def calculate_position_totals(positions: Sequence[NormalizedPosition]) -> PositionTotals:
    total_collateral = 0.0
    total_borrow = 0.0
    total_supplied = 0.0

    for position in positions:
        total_collateral += position.state.collateral_usd or 0.0
        total_borrow += position.state.borrow_assets_usd or 0.0
        total_supplied += position.state.supply_assets_usd or 0.0

    return PositionTotals(
        total_collateral_usd=total_collateral,
        total_borrow_usd=total_borrow,
        total_supplied_usd=total_supplied,
        net_supply_usd=total_supplied - total_borrow,
    )


def separate_positions(
    positions: Sequence[NormalizedPosition],
) -> tuple[List[NormalizedPosition], List[NormalizedPosition]]:
    """Split positions into (lending, borrowing); a position can be in both."""
    lending = [position for position in positions if position.has_supply]
    borrowing = [position for position in positions if position.has_borrow]
    return lending, borrowing
