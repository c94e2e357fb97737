from dataclasses import replace

import pytest

from conftest import WALLET, ok, reverted, transport_error
from morpho_monitor.protocols.base import format_units, shares_to_assets
from morpho_monitor.protocols.markets import (
    MARKET_CONFIGS,
    USDC,
    WETH,
    WLD,
    ZERO_ADDRESS,
    MarketConfig,
    TokenRef,
)
from morpho_monitor.protocols.morpho import MorphoBlueReader
from morpho_monitor.services.multicall import FatalFetchError

WLD_USDC, WETH_USDC, WETH_WLD = MARKET_CONFIGS[0], MARKET_CONFIGS[1], MARKET_CONFIGS[2]
ORACLE = "0x" + "cd" * 20
IRM = "0x" + "ef" * 20


def market_id(call) -> str:
    return "0x" + call.args[0].hex()


class FakeMorpho:
    """Per-market answers for the three Morpho Blue getters."""

    def __init__(self, strategy):
        self.positions = {}
        self.states = {}
        self.params = {}
        strategy.on("position", self._position)
        strategy.on("market", self._market)
        strategy.on("idToMarketParams", self._params)

    def set_position(self, market: MarketConfig, supply_shares=0, borrow_shares=0, collateral=0):
        self.positions[market.market_id] = ok(supply_shares, borrow_shares, collateral)

    def set_state(
        self,
        market: MarketConfig,
        total_supply_assets=0,
        total_supply_shares=0,
        total_borrow_assets=0,
        total_borrow_shares=0,
    ):
        self.states[market.market_id] = ok(
            total_supply_assets,
            total_supply_shares,
            total_borrow_assets,
            total_borrow_shares,
            1_700_000_000,
            0,
        )

    def set_params(self, market: MarketConfig, lltv_wad: int, oracle: str = ZERO_ADDRESS):
        self.params[market.market_id] = ok(
            market.loan_token.address,
            market.collateral_token.address,
            oracle,
            IRM,
            lltv_wad,
        )

    def _position(self, call):
        return self.positions.get(market_id(call), ok(0, 0, 0))

    def _market(self, call):
        return self.states.get(market_id(call), reverted("market"))

    def _params(self, call):
        return self.params.get(market_id(call), reverted("idToMarketParams"))


@pytest.fixture
def morpho(strategy):
    return FakeMorpho(strategy)


@pytest.fixture
def reader(chain_reader, price_resolver):
    return MorphoBlueReader(chain_reader, price_resolver, markets=[WLD_USDC, WETH_USDC, WETH_WLD])


class TestConversions:
    def test_shares_to_assets_truncates(self):
        assert shares_to_assets(333, 2150, 1000) == 715

    def test_shares_to_assets_empty_market(self):
        assert shares_to_assets(333, 2150, 0) == 0

    def test_format_units(self):
        assert format_units(1_500_000, 6) == "1.5"
        assert format_units(715, 6) == "0.000715"
        assert format_units(10 * 10**18, 18) == "10"
        assert format_units(0, 18) == "0"
        assert format_units(-25, 1) == "-2.5"


class TestMorphoBlueReader:
    def test_name(self, reader):
        assert reader.name == "Morpho Blue"

    def test_inactive_markets_are_not_read(self, chain_reader, price_resolver):
        inactive = MarketConfig(
            market_name="OLD",
            market_id="0x" + "00" * 32,
            collateral_token=WLD_USDC.collateral_token,
            loan_token=WLD_USDC.loan_token,
            liquidation_ltv=0.5,
            active=False,
        )
        reader = MorphoBlueReader(chain_reader, price_resolver, markets=[WLD_USDC, inactive])

        assert reader.markets == [WLD_USDC]

    @pytest.mark.asyncio
    async def test_borrow_position(self, reader, morpho):
        morpho.set_position(WLD_USDC, borrow_shares=333, collateral=10 * 10**18)
        morpho.set_state(WLD_USDC, total_borrow_assets=2150, total_borrow_shares=1000)
        morpho.set_params(WLD_USDC, lltv_wad=770_000_000_000_000_000)

        result = await reader.get_positions(WALLET)

        assert len(result.value) == 1
        position = result.value[0]
        assert position.market.id == WLD_USDC.market_id
        assert position.market.liquidation_ltv == 0.77
        assert position.market.collateral_asset.symbol == "WLD"
        assert position.state.collateral_amount == "10"
        assert position.state.collateral_usd == pytest.approx(20.0)
        assert position.state.borrow_amount == "0.000715"
        assert position.state.borrow_assets_usd == pytest.approx(0.000715)
        assert position.state.borrow_shares == "333"
        assert position.has_borrow is True
        assert position.has_supply is False

    @pytest.mark.asyncio
    async def test_supply_position(self, reader, morpho):
        morpho.set_position(WETH_USDC, supply_shares=2 * 10**6)
        morpho.set_state(WETH_USDC, total_supply_assets=3 * 10**6, total_supply_shares=2 * 10**6)
        morpho.set_params(WETH_USDC, lltv_wad=860_000_000_000_000_000)

        result = await reader.get_positions(WALLET)

        position = result.value[0]
        assert position.state.supply_amount == "3"
        assert position.state.supply_assets_usd == pytest.approx(3.0)
        assert position.state.supply_shares == "2000000"
        assert position.has_supply is True

    @pytest.mark.asyncio
    async def test_zero_positions_are_excluded(self, reader, morpho):
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_state(WLD_USDC)
        morpho.set_state(WETH_USDC)
        morpho.set_state(WETH_WLD)

        result = await reader.get_positions(WALLET)

        assert [p.market.id for p in result.value] == [WLD_USDC.market_id]

    @pytest.mark.asyncio
    async def test_failed_position_read_skips_only_that_market(self, reader, morpho, strategy):
        for market in (WLD_USDC, WETH_USDC, WETH_WLD):
            morpho.set_position(market, collateral=10**18)
            morpho.set_state(market)
        morpho.positions[WETH_USDC.market_id] = reverted("position")

        result = await reader.get_positions(WALLET)

        assert [p.market.id for p in result.value] == [WLD_USDC.market_id, WETH_WLD.market_id]
        assert any(WETH_USDC.market_name in event.message for event in result.trace.warnings)

    @pytest.mark.asyncio
    async def test_failed_market_read_skips_market(self, reader, morpho):
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_position(WETH_WLD, collateral=10**18)
        morpho.set_state(WETH_WLD)

        result = await reader.get_positions(WALLET)

        assert [p.market.id for p in result.value] == [WETH_WLD.market_id]

    @pytest.mark.asyncio
    async def test_prices_fetched_once(self, reader, morpho, price_resolver):
        for market in (WLD_USDC, WETH_USDC, WETH_WLD):
            morpho.set_position(market, collateral=10**18)
            morpho.set_state(market)

        await reader.get_positions(WALLET)

        assert price_resolver._fetch_bulk_prices.await_count == 1

    @pytest.mark.asyncio
    async def test_lltv_mismatch_prefers_onchain_value(self, reader, morpho):
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_state(WLD_USDC)
        morpho.set_params(WLD_USDC, lltv_wad=800_000_000_000_000_000)

        result = await reader.get_positions(WALLET)

        assert result.value[0].market.liquidation_ltv == pytest.approx(0.8)
        assert any("LLTV mismatch" in event.message for event in result.trace.warnings)

    @pytest.mark.asyncio
    async def test_lltv_mismatch_can_keep_configured_value(self, chain_reader, price_resolver, morpho):
        reader = MorphoBlueReader(
            chain_reader, price_resolver, markets=[WLD_USDC], trust_onchain_lltv=False
        )
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_state(WLD_USDC)
        morpho.set_params(WLD_USDC, lltv_wad=800_000_000_000_000_000)

        result = await reader.get_positions(WALLET)

        assert result.value[0].market.liquidation_ltv == 0.77
        assert any("LLTV mismatch" in event.message for event in result.trace.warnings)

    @pytest.mark.asyncio
    async def test_missing_params_use_configured_lltv(self, reader, morpho):
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_state(WLD_USDC)

        result = await reader.get_positions(WALLET)

        assert result.value[0].market.liquidation_ltv == 0.77

    @pytest.mark.asyncio
    async def test_borrow_price_falls_back_to_oracle_ratio(self, reader, morpho, strategy, prices):
        del prices["USDC"]
        morpho.set_position(WLD_USDC, borrow_shares=100 * 10**6, collateral=1000 * 10**18)
        morpho.set_state(WLD_USDC, total_borrow_assets=10**12, total_borrow_shares=10**12)
        morpho.set_params(WLD_USDC, lltv_wad=770_000_000_000_000_000, oracle=ORACLE)
        # WLD/USDC ratio of 0.5, scaled by 1e(36 + 6 - 18)
        strategy.on("price", ok(5 * 10**23))

        result = await reader.get_positions(WALLET)

        position = result.value[0]
        # borrowAmount * collateralPrice * oracleRatio = 100 * 2.0 * 0.5
        assert position.state.borrow_assets_usd == pytest.approx(100.0)
        assert any("oracle ratio" in event.message for event in result.trace.warnings)

    @pytest.mark.asyncio
    async def test_no_oracle_leaves_borrow_unpriced(self, reader, morpho, prices):
        del prices["USDC"]
        morpho.set_position(WLD_USDC, borrow_shares=100 * 10**6, collateral=1000 * 10**18)
        morpho.set_state(WLD_USDC, total_borrow_assets=10**12, total_borrow_shares=10**12)
        morpho.set_params(WLD_USDC, lltv_wad=770_000_000_000_000_000)

        result = await reader.get_positions(WALLET)

        assert result.value[0].state.borrow_assets_usd == 0.0

    @pytest.mark.asyncio
    async def test_unreachable_rpc_propagates(self, reader, strategy):
        strategy.handlers.clear()
        strategy.batch_error = ConnectionError("rpc down")
        strategy.default = transport_error()

        with pytest.raises(FatalFetchError):
            await reader.get_positions(WALLET)

    @pytest.mark.asyncio
    async def test_no_markets(self, chain_reader, price_resolver, strategy):
        reader = MorphoBlueReader(chain_reader, price_resolver, markets=[])

        result = await reader.get_positions(WALLET)

        assert result.value == []
        assert strategy.calls == []

    @pytest.mark.asyncio
    async def test_lower_case_symbols_are_priced(self, chain_reader, price_resolver, morpho):
        market = replace(
            WLD_USDC,
            collateral_token=TokenRef(address=WLD.address, symbol="wld", decimals=18),
            loan_token=TokenRef(address=USDC.address, symbol="usdc", decimals=6),
        )
        reader = MorphoBlueReader(chain_reader, price_resolver, markets=[market])
        morpho.set_position(market, borrow_shares=10**6, collateral=10**18)
        morpho.set_state(market, total_borrow_assets=10**6, total_borrow_shares=10**6)

        result = await reader.get_positions(WALLET)

        assert result.value[0].state.collateral_usd == pytest.approx(2.0)
        assert result.value[0].state.borrow_assets_usd == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_token_mismatch_is_traced(self, reader, morpho):
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_state(WLD_USDC)
        morpho.params[WLD_USDC.market_id] = ok(
            USDC.address, WETH.address, ZERO_ADDRESS, IRM, 770_000_000_000_000_000
        )

        result = await reader.get_positions(WALLET)

        mismatches = [e.message for e in result.trace.warnings if "token mismatch" in e.message]
        assert len(mismatches) == 1
        assert mismatches[0].startswith("Collateral token mismatch for WLD→USDC")
        assert "on-chain WETH" in mismatches[0]

    @pytest.mark.asyncio
    async def test_matching_tokens_are_not_traced(self, reader, morpho):
        morpho.set_position(WLD_USDC, collateral=10**18)
        morpho.set_state(WLD_USDC)
        morpho.set_params(WLD_USDC, lltv_wad=770_000_000_000_000_000)

        result = await reader.get_positions(WALLET)

        assert result.trace.warnings == []
