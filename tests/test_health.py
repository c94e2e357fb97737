import math

import pytest

from morpho_monitor.core.health import (
    HealthFactorResult,
    HealthStatus,
    calculate_aggregate_health_factor,
    calculate_deposit_for_target_hf,
    calculate_health_factor,
    calculate_max_borrow,
    calculate_position_totals,
    calculate_price_drop_to_liquidation,
    calculate_repayment_for_target_hf,
    calculate_safe_withdrawal,
    classify_health,
    health_factor,
    separate_positions,
    simulate_position,
)
from morpho_monitor.protocols.base import MarketInfo, NormalizedPosition, PositionState
from morpho_monitor.protocols.markets import USDC, WLD


def create_position(
    collateral_usd: float = 1000.0,
    borrow_usd: float = 500.0,
    liquidation_ltv: float = 0.77,
    collateral_amount: str = "500",
    borrow_amount: str = "500",
    supply_usd: float = 0.0,
) -> NormalizedPosition:
    return NormalizedPosition(
        market=MarketInfo(
            id="0x" + "01" * 32,
            liquidation_ltv=liquidation_ltv,
            loan_asset=USDC,
            collateral_asset=WLD,
        ),
        state=PositionState(
            collateral_amount=collateral_amount,
            collateral_usd=collateral_usd,
            borrow_amount=borrow_amount,
            borrow_assets_usd=borrow_usd,
            supply_amount=str(supply_usd),
            supply_assets_usd=supply_usd,
        ),
    )


def create_result(value: float, collateral_usd: float, borrow_usd: float, ltv: float) -> HealthFactorResult:
    return HealthFactorResult(
        value=value,
        status=HealthStatus.HEALTHY,
        liquidation_ltv=ltv,
        collateral_usd=collateral_usd,
        borrow_assets_usd=borrow_usd,
    )


class TestClassifyHealth:
    def test_danger_threshold_is_warning(self, thresholds):
        assert classify_health(1.2, thresholds) == HealthStatus.WARNING

    def test_warning_threshold_is_healthy(self, thresholds):
        assert classify_health(1.5, thresholds) == HealthStatus.HEALTHY

    def test_below_danger(self, thresholds):
        assert classify_health(1.1999, thresholds) == HealthStatus.DANGER

    def test_infinite_is_healthy(self, thresholds):
        assert classify_health(float("inf"), thresholds) == HealthStatus.HEALTHY


class TestCalculateHealthFactor:
    def test_formula(self, thresholds):
        result = calculate_health_factor(create_position(1000.0, 500.0, 0.77), thresholds)

        assert result.value == pytest.approx(1.54)
        assert result.status == HealthStatus.HEALTHY
        assert result.liquidation_ltv == 0.77

    @pytest.mark.parametrize("collateral_usd", [0.0, 1.0, 1_000_000.0])
    def test_no_borrow_is_infinite(self, thresholds, collateral_usd):
        result = calculate_health_factor(create_position(collateral_usd, 0.0), thresholds)

        assert math.isinf(result.value)
        assert result.is_infinite
        assert result.status == HealthStatus.HEALTHY

    def test_danger(self, thresholds):
        result = calculate_health_factor(create_position(1000.0, 700.0, 0.77), thresholds)

        assert result.value == pytest.approx(1.1)
        assert result.status == HealthStatus.DANGER


class TestAggregateHealthFactor:
    def test_ltv_is_collateral_weighted(self, thresholds):
        positions = [
            create_position(collateral_usd=100.0, borrow_usd=0.0, liquidation_ltv=0.5),
            create_position(collateral_usd=900.0, borrow_usd=500.0, liquidation_ltv=0.9),
        ]

        result = calculate_aggregate_health_factor(positions, thresholds)

        assert result.liquidation_ltv == pytest.approx(0.86)
        assert result.collateral_usd == 1000.0
        assert result.borrow_assets_usd == 500.0
        assert result.value == pytest.approx(1.72)

    def test_empty(self, thresholds):
        result = calculate_aggregate_health_factor([], thresholds)

        assert result.is_infinite
        assert result.status == HealthStatus.HEALTHY

    def test_dispatch(self, thresholds):
        position = create_position()

        assert health_factor(position, thresholds) == calculate_health_factor(position, thresholds)
        assert health_factor([position], thresholds).value == pytest.approx(1.54)


class TestSimulatePosition:
    def test_more_borrow_lowers_health_factor(self, thresholds):
        # 500 WLD at $2, 500 USDC at $1
        position = create_position(1000.0, 500.0, 0.77)

        simulation = simulate_position(position, collateral_amount=500, borrow_amount=600, thresholds=thresholds)

        assert simulation.current.value == pytest.approx(1.54)
        assert simulation.simulated.value == pytest.approx(770.0 / 600.0)
        assert simulation.simulated.status == HealthStatus.WARNING
        assert simulation.borrow_change == pytest.approx(100.0)
        assert simulation.collateral_change == pytest.approx(0.0)
        assert simulation.health_factor_change < 0

    def test_explicit_prices(self, thresholds):
        position = create_position(1000.0, 0.0, 0.77, borrow_amount="0")

        simulation = simulate_position(
            position,
            collateral_amount=500,
            borrow_amount=100,
            thresholds=thresholds,
            borrow_price=1.0,
        )

        assert simulation.current.is_infinite
        assert simulation.simulated.value == pytest.approx(7.7)
        assert simulation.health_factor_change == 0.0

    def test_negative_amount(self, thresholds):
        with pytest.raises(ValueError):
            simulate_position(create_position(), collateral_amount=-1, borrow_amount=0, thresholds=thresholds)


class TestTargetHelpers:
    def test_repayment_for_target(self):
        result = create_result(1.1, 1000.0, 700.0, 0.77)

        # max debt at 1.5 = 770 / 1.5
        assert calculate_repayment_for_target_hf(result, 1.5) == pytest.approx(700.0 - 770.0 / 1.5)

    def test_no_repayment_when_above_target(self):
        assert calculate_repayment_for_target_hf(create_result(2.0, 1000.0, 385.0, 0.77)) == 0.0

    def test_deposit_for_target(self):
        result = create_result(1.1, 1000.0, 700.0, 0.77)

        assert calculate_deposit_for_target_hf(result, 1.5) == pytest.approx(1.5 * 700.0 / 0.77 - 1000.0)

    def test_safe_withdrawal(self):
        result = create_result(2.0, 1000.0, 385.0, 0.77)

        assert calculate_safe_withdrawal(result, 1.5) == pytest.approx(1000.0 - 1.5 * 385.0 / 0.77)

    def test_safe_withdrawal_without_debt(self):
        result = create_result(float("inf"), 1000.0, 0.0, 0.77)

        assert calculate_safe_withdrawal(result) == 1000.0

    def test_max_borrow(self):
        result = create_result(2.0, 1000.0, 385.0, 0.77)

        assert calculate_max_borrow(result, 1.5) == pytest.approx(770.0 / 1.5 - 385.0)

    def test_price_drop_to_liquidation(self):
        assert calculate_price_drop_to_liquidation(create_result(2.0, 1000.0, 385.0, 0.77)) == pytest.approx(50.0)
        assert calculate_price_drop_to_liquidation(create_result(float("inf"), 1000.0, 0.0, 0.77)) is None


class TestPositionTotals:
    def test_totals(self):
        positions = [
            create_position(1000.0, 500.0),
            create_position(0.0, 0.0, collateral_amount="0", borrow_amount="0", supply_usd=300.0),
        ]

        totals = calculate_position_totals(positions)

        assert totals.total_collateral_usd == 1000.0
        assert totals.total_borrow_usd == 500.0
        assert totals.total_supplied_usd == 300.0
        assert totals.net_supply_usd == -200.0

    def test_separate_positions(self):
        borrower = create_position(1000.0, 500.0)
        lender = create_position(0.0, 0.0, collateral_amount="0", borrow_amount="0", supply_usd=300.0)

        lending, borrowing = separate_positions([borrower, lender])

        assert lending == [lender]
        assert borrowing == [borrower]
