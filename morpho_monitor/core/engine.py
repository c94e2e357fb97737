"""Position aggregation engine.

This module wires the chain readers, the price resolver and the position
cache together behind the operations the API layer uses: cached position
snapshots per wallet, health factors derived on every read, and explicit
cache invalidation. All collaborators are passed in; ``from_settings``
builds the default World Chain / OP Mainnet wiring.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Sequence

from morpho_monitor.config import HealthThresholds, Settings
from morpho_monitor.core.alerter import StatusTracker
from morpho_monitor.core.health import HealthFactorResult, HealthStatus, health_factor
from morpho_monitor.protocols.base import (
    InterestVaultBalance,
    NormalizedPosition,
    ReadResult,
    VaultPosition,
    WalletBalance,
)
from morpho_monitor.protocols.morpho import MorphoBlueReader
from morpho_monitor.protocols.morpho_api import MorphoApiReader
from morpho_monitor.protocols.vaults import (
    InterestVaultReader,
    MetaMorphoVaultReader,
    SpendingBalanceReader,
)
from morpho_monitor.services.cache import PositionCache
from morpho_monitor.services.diagnostics import Trace
from morpho_monitor.services.metrics import ReconstructionTimer
from morpho_monitor.services.multicall import ChainReader, FatalFetchError
from morpho_monitor.services.price import PriceOracleResolver
from morpho_monitor.services.rpc import create_web3

logger = logging.getLogger(__name__)


@dataclass
class PositionSnapshot:
    address: str
    positions: List[NormalizedPosition]
    vault_positions: List[VaultPosition] = field(default_factory=list)
    interest_vault: InterestVaultBalance | None = None
    spending_balance: WalletBalance | None = None
    api_positions: List[NormalizedPosition] = field(default_factory=list)
    chain_summary: Dict[str, str] = field(default_factory=dict)
    fetched_at: float = 0.0
    stale: bool = False


class PositionEngine:
    def __init__(
        self,
        market_reader: MorphoBlueReader,
        position_cache: PositionCache[PositionSnapshot],
        thresholds: HealthThresholds | None = None,
        vault_reader: MetaMorphoVaultReader | None = None,
        interest_vault_reader: InterestVaultReader | None = None,
        spending_reader: SpendingBalanceReader | None = None,
        api_reader: MorphoApiReader | None = None,
        status_tracker: StatusTracker | None = None,
    ):
        self._market_reader = market_reader
        self._vault_reader = vault_reader
        self._interest_vault_reader = interest_vault_reader
        self._spending_reader = spending_reader
        self._api_reader = api_reader
        self._status_tracker = status_tracker or StatusTracker()
        self._cache = position_cache
        self._thresholds = thresholds or HealthThresholds()
        self._traces: Dict[str, Trace] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> PositionEngine:
        world_chain = ChainReader(
            create_web3(settings.rpc_url, settings.rpc_timeout_seconds),
            multicall_address=settings.multicall_address,
            timeout_seconds=settings.rpc_timeout_seconds,
        )
        op_mainnet = ChainReader(
            create_web3(settings.vault_rpc_url, settings.rpc_timeout_seconds),
            multicall_address=settings.multicall_address,
            timeout_seconds=settings.rpc_timeout_seconds,
        )
        prices = PriceOracleResolver(
            world_chain,
            settings.price_api_url,
            ttl_seconds=settings.price_cache_ttl_seconds,
            timeout_seconds=settings.price_timeout_seconds,
        )
        return cls(
            market_reader=MorphoBlueReader(
                world_chain,
                prices,
                morpho_address=settings.morpho_blue_address,
                trust_onchain_lltv=settings.trust_onchain_lltv,
            ),
            vault_reader=MetaMorphoVaultReader(world_chain, prices),
            interest_vault_reader=InterestVaultReader(op_mainnet, prices),
            spending_reader=SpendingBalanceReader(op_mainnet, prices),
            api_reader=(
                MorphoApiReader(settings.morpho_api_url, timeout_seconds=settings.morpho_api_timeout_seconds)
                if settings.morpho_api_enabled
                else None
            ),
            position_cache=PositionCache(ttl_seconds=settings.position_cache_ttl_seconds),
            thresholds=settings.thresholds,
        )

    @property
    def thresholds(self) -> HealthThresholds:
        return self._thresholds

    async def get_positions(self, wallet_address: str, force: bool = False) -> PositionSnapshot:
        """
        Positions for a wallet, served from cache while fresh.

        Raises:
            FatalFetchError: the chain is unreachable and nothing is cached
        """
        cached = await self._cache.get_or_fetch(wallet_address, self._reconstruct, force=force)
        if cached.stale:
            self._trace_for(wallet_address).add(
                "Serving cached positions after a failed refresh",
                level=logging.WARNING,
                logger=logger,
            )
            return replace(cached.value, stale=True)
        return cached.value

    async def refresh(self, wallet_address: str) -> PositionSnapshot:
        """Refetch now, keeping the previous snapshot as a fallback."""
        return await self.get_positions(wallet_address, force=True)

    def invalidate(self, wallet_address: str | None = None) -> int:
        return self._cache.invalidate(wallet_address)

    async def health_factor(
        self,
        wallet_address: str,
        thresholds: HealthThresholds | None = None,
    ) -> HealthFactorResult:
        """
        Aggregate health factor over a wallet's market positions.

        Status changes are tracked against the engine's own thresholds only;
        a request with different thresholds leaves the tracked status untouched.
        """
        snapshot = await self.get_positions(wallet_address)
        result = self.compute_health_factor(snapshot.positions, thresholds)
        if thresholds is None or thresholds == self._thresholds:
            transition = self._status_tracker.observe(wallet_address, result)
            if transition is not None:
                level = logging.ERROR if transition.current == HealthStatus.DANGER else logging.WARNING
                self._trace_for(wallet_address).add(transition.message, level=level, logger=logger)
        return result

    def last_status(self, wallet_address: str) -> HealthStatus | None:
        record = self._status_tracker.last_status(wallet_address)
        return record.status if record is not None else None

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.get_stats()

    def compute_health_factor(
        self,
        positions: NormalizedPosition | Sequence[NormalizedPosition],
        thresholds: HealthThresholds | None = None,
    ) -> HealthFactorResult:
        return health_factor(positions, thresholds or self._thresholds)

    def get_trace(self, wallet_address: str) -> Trace | None:
        """Diagnostic trace of the most recent reconstruction for a wallet."""
        return self._traces.get(wallet_address.lower())

    def _trace_for(self, wallet_address: str) -> Trace:
        return self._traces.setdefault(wallet_address.lower(), Trace())

    async def _reconstruct(self, wallet_address: str) -> PositionSnapshot:
        trace = Trace()
        self._traces[wallet_address.lower()] = trace
        trace.add(f"Reconstructing positions for {wallet_address}", logger=logger)

        with ReconstructionTimer():
            try:
                markets, vaults, deposit, spending, api = await asyncio.gather(
                    self._market_reader.get_positions(wallet_address),
                    self._read_vaults(wallet_address),
                    self._read_interest_vault(wallet_address),
                    self._read_spending(wallet_address),
                    self._read_api(wallet_address),
                )
            except FatalFetchError as e:
                trace.add(f"ERROR: {e}", level=logging.ERROR, logger=logger)
                raise

        for result in (markets, vaults, deposit, spending, api):
            trace.extend(result.trace)

        return PositionSnapshot(
            address=wallet_address,
            positions=markets.value,
            vault_positions=vaults.value,
            interest_vault=deposit.value,
            spending_balance=spending.value,
            api_positions=api.value,
            chain_summary=self._api_reader.chain_summary(wallet_address) if self._api_reader is not None else {},
            fetched_at=trace.events[0].timestamp,
        )

    async def _read_vaults(self, wallet_address: str) -> ReadResult[List[VaultPosition]]:
        if self._vault_reader is None:
            return ReadResult(value=[])
        return await self._vault_reader.get_positions(wallet_address)

    async def _read_interest_vault(self, wallet_address: str) -> ReadResult[InterestVaultBalance | None]:
        if self._interest_vault_reader is None:
            return ReadResult(value=None)
        try:
            return await self._interest_vault_reader.get_balance(wallet_address)
        except FatalFetchError as e:
            # Separate chain; its outage must not hide the World Chain positions
            result = ReadResult(value=None)
            result.trace.add(f"World App vault unavailable: {e}", level=logging.WARNING, logger=logger)
            return result

    async def _read_spending(self, wallet_address: str) -> ReadResult[WalletBalance | None]:
        if self._spending_reader is None:
            return ReadResult(value=None)
        try:
            return await self._spending_reader.get_balance(wallet_address)
        except FatalFetchError as e:
            result = ReadResult(value=None)
            result.trace.add(f"Spending balance unavailable: {e}", level=logging.WARNING, logger=logger)
            return result

    async def _read_api(self, wallet_address: str) -> ReadResult[List[NormalizedPosition]]:
        if self._api_reader is None:
            return ReadResult(value=[])
        return await self._api_reader.get_positions(wallet_address)
