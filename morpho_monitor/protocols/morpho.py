"""Morpho Blue position reconstruction.

Reads a wallet's supply/borrow shares and collateral for every configured
market straight from the Morpho Blue contract, converts shares to assets the
way the protocol does, and prices everything in USD.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List

from morpho_monitor.protocols.base import (
    MarketInfo,
    NormalizedPosition,
    PositionSource,
    PositionState,
    ReadResult,
    format_units,
    shares_to_assets,
    to_usd,
)
from morpho_monitor.protocols.markets import (
    MARKET_CONFIGS,
    ZERO_ADDRESS,
    MarketConfig,
    get_active_markets,
    get_token_by_address,
)
from morpho_monitor.services.diagnostics import Trace
from morpho_monitor.services.multicall import CallResult, ChainReader, build_call
from morpho_monitor.services.price import PriceOracleResolver

logger = logging.getLogger(__name__)

# Morpho Blue is deployed at the same address on World Chain and Ethereum
MORPHO_BLUE = "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb"

POSITION_SIGNATURE = "position(bytes32,address)"
POSITION_OUTPUT_TYPES = [
    "uint256",  # supplyShares
    "uint128",  # borrowShares
    "uint128",  # collateral
]

MARKET_SIGNATURE = "market(bytes32)"
MARKET_OUTPUT_TYPES = [
    "uint128",  # totalSupplyAssets
    "uint128",  # totalSupplyShares
    "uint128",  # totalBorrowAssets
    "uint128",  # totalBorrowShares
    "uint128",  # lastUpdate
    "uint128",  # fee
]

MARKET_PARAMS_SIGNATURE = "idToMarketParams(bytes32)"
MARKET_PARAMS_OUTPUT_TYPES = [
    "address",  # loanToken
    "address",  # collateralToken
    "address",  # oracle
    "address",  # irm
    "uint256",  # lltv (1e18 = 100%)
]

LLTV_SCALE = 10**18
LLTV_TOLERANCE = 1e-9


@dataclass
class RawPosition:
    supply_shares: int
    borrow_shares: int
    collateral: int

    @property
    def is_empty(self) -> bool:
        return self.supply_shares == 0 and self.borrow_shares == 0 and self.collateral == 0


@dataclass
class RawMarketState:
    total_supply_assets: int
    total_supply_shares: int
    total_borrow_assets: int
    total_borrow_shares: int
    last_update: int
    fee: int


@dataclass
class _MarketRead:
    """Decoded on-chain data for one market that has a non-empty position."""
    config: MarketConfig
    position: RawPosition
    state: RawMarketState
    liquidation_ltv: float
    oracle_address: str | None
    supply_assets: int
    borrow_assets: int


class MorphoBlueReader(PositionSource):
    """Reconstructs Morpho Blue market positions for a wallet."""

    def __init__(
        self,
        chain_reader: ChainReader,
        price_resolver: PriceOracleResolver,
        markets: List[MarketConfig] | None = None,
        morpho_address: str = MORPHO_BLUE,
        trust_onchain_lltv: bool = True,
    ):
        self._chain_reader = chain_reader
        self._prices = price_resolver
        self._markets = markets if markets is not None else MARKET_CONFIGS
        self._morpho_address = morpho_address
        self._trust_onchain_lltv = trust_onchain_lltv

    @property
    def name(self) -> str:
        return "Morpho Blue"

    @property
    def markets(self) -> List[MarketConfig]:
        return get_active_markets(self._markets)

    async def get_positions(self, wallet_address: str) -> ReadResult[List[NormalizedPosition]]:
        """
        Reconstruct every non-empty market position for a wallet.

        A market whose reads fail is skipped and noted in the trace. Only a
        failure of the RPC transport itself (FatalFetchError) propagates.
        """
        trace = Trace()
        markets = self.markets
        trace.add(
            f"Checking positions for {wallet_address} across {len(markets)} markets",
            logger=logger,
        )
        if not markets:
            return ReadResult(value=[], trace=trace)

        position_results, market_results, params_results = await asyncio.gather(
            self._chain_reader.batch_read([
                build_call(
                    self._morpho_address,
                    POSITION_SIGNATURE,
                    ["bytes32", "address"],
                    [market.market_id_bytes, wallet_address],
                    POSITION_OUTPUT_TYPES,
                )
                for market in markets
            ]),
            self._chain_reader.batch_read([
                build_call(
                    self._morpho_address,
                    MARKET_SIGNATURE,
                    ["bytes32"],
                    [market.market_id_bytes],
                    MARKET_OUTPUT_TYPES,
                )
                for market in markets
            ]),
            self._chain_reader.batch_read([
                build_call(
                    self._morpho_address,
                    MARKET_PARAMS_SIGNATURE,
                    ["bytes32"],
                    [market.market_id_bytes],
                    MARKET_PARAMS_OUTPUT_TYPES,
                )
                for market in markets
            ]),
        )

        reads: List[_MarketRead] = []
        for market, position_result, market_result, params_result in zip(
            markets, position_results, market_results, params_results
        ):
            read = self._decode_market(market, position_result, market_result, params_result, trace)
            if read is not None:
                reads.append(read)

        # Prices for every symbol of every active market, fetched once each
        symbols = {m.collateral_token.symbol for m in markets} | {m.loan_token.symbol for m in markets}
        prices = await self._prices.resolve_prices(sorted(symbols))
        trace.add(f"Prices: {prices}", logger=logger)

        borrow_prices = await self._resolve_borrow_prices(reads, prices, trace)

        positions = [
            self._normalize(read, prices, borrow_prices[read.config.market_id])
            for read in reads
        ]
        trace.add(f"Total positions found: {len(positions)}", logger=logger)
        return ReadResult(value=positions, trace=trace)

    def _decode_market(
        self,
        market: MarketConfig,
        position_result: CallResult,
        market_result: CallResult,
        params_result: CallResult,
        trace: Trace,
    ) -> _MarketRead | None:
        if not position_result.success:
            trace.add(
                f"Skipping {market.market_name}: position read failed ({position_result.error})",
                level=logging.WARNING,
                logger=logger,
            )
            return None

        position = RawPosition(*position_result.value)
        if position.is_empty:
            trace.add(f"No position in {market.market_name}", level=logging.DEBUG, logger=logger)
            return None

        if not market_result.success:
            trace.add(
                f"Skipping {market.market_name}: market read failed ({market_result.error})",
                level=logging.WARNING,
                logger=logger,
            )
            return None

        state = RawMarketState(*market_result.value)
        liquidation_ltv, oracle_address = self._reconcile_params(market, params_result, trace)

        supply_assets = shares_to_assets(
            position.supply_shares, state.total_supply_assets, state.total_supply_shares
        )
        borrow_assets = shares_to_assets(
            position.borrow_shares, state.total_borrow_assets, state.total_borrow_shares
        )
        trace.add(
            f"Found position in {market.market_name}: supplyShares={position.supply_shares}, "
            f"borrowShares={position.borrow_shares}, collateral={position.collateral}",
            logger=logger,
        )

        return _MarketRead(
            config=market,
            position=position,
            state=state,
            liquidation_ltv=liquidation_ltv,
            oracle_address=oracle_address,
            supply_assets=supply_assets,
            borrow_assets=borrow_assets,
        )

    def _reconcile_params(
        self,
        market: MarketConfig,
        params_result: CallResult,
        trace: Trace,
    ) -> tuple[float, str | None]:
        """Cross-check the configured LLTV and oracle against the market params."""
        oracle_address = market.oracle_address if market.has_oracle else None

        if not params_result.success:
            trace.add(
                f"Market params unavailable for {market.market_name}, "
                f"using configured LLTV {market.liquidation_ltv}",
                level=logging.WARNING,
                logger=logger,
            )
            return market.liquidation_ltv, oracle_address

        self._check_tokens(market, params_result.value[0], params_result.value[1], trace)
        onchain_oracle = params_result.value[2]
        onchain_lltv = params_result.value[4] / LLTV_SCALE

        if oracle_address is None and onchain_oracle and onchain_oracle.lower() != ZERO_ADDRESS:
            oracle_address = onchain_oracle

        if onchain_lltv <= 0:
            return market.liquidation_ltv, oracle_address

        if abs(onchain_lltv - market.liquidation_ltv) > LLTV_TOLERANCE:
            used = onchain_lltv if self._trust_onchain_lltv else market.liquidation_ltv
            trace.add(
                f"LLTV mismatch for {market.market_name}: configured {market.liquidation_ltv}, "
                f"on-chain {onchain_lltv}; using {used}",
                level=logging.WARNING,
                logger=logger,
            )
            return used, oracle_address

        return market.liquidation_ltv, oracle_address

    def _check_tokens(
        self,
        market: MarketConfig,
        onchain_loan: str,
        onchain_collateral: str,
        trace: Trace,
    ):
        """Warn when the market params name different tokens than configured."""
        for role, configured, onchain in (
            ("Loan", market.loan_token, onchain_loan),
            ("Collateral", market.collateral_token, onchain_collateral),
        ):
            if not onchain or onchain.lower() == configured.address.lower():
                continue
            known = get_token_by_address(onchain)
            trace.add(
                f"{role} token mismatch for {market.market_name}: configured "
                f"{configured.symbol} ({configured.address}), on-chain "
                f"{known.symbol if known else 'unknown'} ({onchain})",
                level=logging.WARNING,
                logger=logger,
            )

    async def _resolve_borrow_prices(
        self,
        reads: List[_MarketRead],
        prices: Dict[str, float],
        trace: Trace,
    ) -> Dict[str, float]:
        """Pick the USD price used for each market's borrowed assets."""
        borrow_prices: Dict[str, float] = {}
        fallbacks = []

        for read in reads:
            loan_price = prices.get(read.config.loan_token.symbol.upper(), 0.0)
            borrow_prices[read.config.market_id] = loan_price
            if loan_price == 0 and read.borrow_assets > 0 and read.oracle_address:
                fallbacks.append(read)

        if not fallbacks:
            return borrow_prices

        ratios = await asyncio.gather(*(
            self._prices.get_oracle_ratio(
                read.oracle_address,
                read.config.collateral_token.decimals,
                read.config.loan_token.decimals,
            )
            for read in fallbacks
        ))

        for read, ratio in zip(fallbacks, ratios):
            collateral_price = prices.get(read.config.collateral_token.symbol.upper(), 0.0)
            effective = collateral_price * ratio
            borrow_prices[read.config.market_id] = effective
            trace.add(
                f"No direct {read.config.loan_token.symbol} price for {read.config.market_name}; "
                f"oracle ratio {ratio} gives effective borrow price {effective}",
                level=logging.WARNING,
                logger=logger,
            )

        return borrow_prices

    def _normalize(
        self,
        read: _MarketRead,
        prices: Dict[str, float],
        borrow_price: float,
    ) -> NormalizedPosition:
        collateral_token = read.config.collateral_token
        loan_token = read.config.loan_token

        collateral_amount = format_units(read.position.collateral, collateral_token.decimals)
        supply_amount = format_units(read.supply_assets, loan_token.decimals)
        borrow_amount = format_units(read.borrow_assets, loan_token.decimals)

        return NormalizedPosition(
            market=MarketInfo(
                id=read.config.market_id,
                liquidation_ltv=read.liquidation_ltv,
                loan_asset=loan_token,
                collateral_asset=collateral_token,
            ),
            state=PositionState(
                collateral_amount=collateral_amount,
                collateral_usd=to_usd(collateral_amount, prices.get(collateral_token.symbol.upper(), 0.0)),
                borrow_amount=borrow_amount,
                borrow_assets_usd=to_usd(borrow_amount, borrow_price),
                borrow_shares=str(read.position.borrow_shares),
                supply_amount=supply_amount,
                supply_assets_usd=to_usd(supply_amount, prices.get(loan_token.symbol.upper(), 0.0)),
                supply_shares=str(read.position.supply_shares),
            ),
        )
