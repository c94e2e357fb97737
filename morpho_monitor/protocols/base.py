"""Position data models and on-chain amount conversion helpers.

This module defines the normalized position types produced by the readers
(Morpho Blue markets, MetaMorpho vaults, the World App vault) and the
share/asset and fixed-point conversions they share.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, List, TypeVar

from morpho_monitor.protocols.markets import TokenRef, VaultConfig
from morpho_monitor.services.diagnostics import Trace

T = TypeVar("T")


def shares_to_assets(shares: int, total_assets: int, total_shares: int) -> int:
    """Convert protocol shares to assets, truncating like the contract does."""
    if total_shares <= 0:
        return 0
    return shares * total_assets // total_shares


def format_units(value: int, decimals: int) -> str:
    """Render a fixed-point integer as an exact decimal string ("1.5", "0")."""
    negative = value < 0
    digits = str(abs(value)).rjust(decimals + 1, "0")
    split = len(digits) - decimals
    integer, fraction = digits[:split], digits[split:].rstrip("0")
    result = f"{integer}.{fraction}" if fraction else integer
    return f"-{result}" if negative else result


def to_usd(amount: str, price: float) -> float:
    return float(amount) * price


@dataclass
class MarketInfo:
    id: str
    liquidation_ltv: float
    loan_asset: TokenRef
    collateral_asset: TokenRef


@dataclass
class PositionState:
    collateral_amount: str = "0"
    collateral_usd: float = 0.0
    borrow_amount: str = "0"
    borrow_assets_usd: float = 0.0
    borrow_shares: str = "0"
    supply_amount: str = "0"
    supply_assets_usd: float = 0.0
    supply_shares: str = "0"


@dataclass
class NormalizedPosition:
    """One wallet's position in one lending market."""
    market: MarketInfo
    state: PositionState

    @property
    def has_borrow(self) -> bool:
        return float(self.state.borrow_amount) > 0 or self.state.borrow_assets_usd > 0

    @property
    def has_supply(self) -> bool:
        return float(self.state.supply_amount) > 0 or self.state.supply_assets_usd > 0


@dataclass
class VaultPosition:
    """Share balance in a single-asset vault, converted to the underlying."""
    vault: VaultConfig
    shares: str
    assets: str
    assets_usd: float


@dataclass
class InterestVaultBalance:
    """Deposit in the World App vault. Interest is read, never computed."""
    amount_now: str
    principal: str
    accrued_interest: str
    amount_now_usd: float
    principal_usd: float
    accrued_interest_usd: float
    end_time: int               # UNIX timestamp
    last_interest_calculation: int
    symbol: str
    decimals: int


@dataclass
class WalletBalance:
    """Plain token balance held by the wallet itself."""
    balance: str
    balance_usd: float
    symbol: str
    decimals: int


@dataclass
class ReadResult(Generic[T]):
    """Reader output paired with the diagnostic trace gathered while reading."""
    value: T
    trace: Trace = field(default_factory=Trace)


class PositionSource(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name (e.g., 'Morpho Blue')."""
        pass

    @abstractmethod
    async def get_positions(self, wallet_address: str) -> ReadResult[List]:
        """Reconstruct every position this source holds for a wallet."""
        pass
