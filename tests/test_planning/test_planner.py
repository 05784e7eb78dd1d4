"""Tests for RebalancePlanner.

All amounts are raw integers; swap + remaining must equal the balance.
"""

from decimal import Decimal

import pytest

from rebalancer.config import USDC_ADDRESS, WETH_ADDRESS
from rebalancer.models import RebalanceIntensity, TokenBalance
from rebalancer.planning.planner import INTENSITY_PERCENTAGES, RebalancePlanner

ONE_WETH = 10**18
CBBTC_ADDRESS = "0x" + "d" * 40


@pytest.fixture
def planner() -> RebalancePlanner:
    return RebalancePlanner(USDC_ADDRESS, "USDC", min_swap_amount=Decimal("0.001"))


def _weth(raw: int = ONE_WETH) -> TokenBalance:
    return TokenBalance(WETH_ADDRESS, "WETH", raw, 18)


def _usdc(raw: int = 500 * 10**6) -> TokenBalance:
    return TokenBalance(USDC_ADDRESS, "USDC", raw, 6)


class TestPlan:
    def test_medium_swaps_forty_percent(self, planner: RebalancePlanner) -> None:
        plan = planner.plan(RebalanceIntensity.MEDIUM, [_weth(), _usdc()])

        assert len(plan.steps) == 1
        step = plan.steps[0]
        assert step.amount_to_swap_raw == 400_000_000_000_000_000
        assert step.remaining_balance_raw == 600_000_000_000_000_000
        assert plan.total_swap_amount == Decimal("0.4")
        assert plan.estimated_stable_received == Decimal("0.320000")

    @pytest.mark.parametrize(
        "intensity,expected",
        [
            (RebalanceIntensity.SOFT, 150_000_000_000_000_000),
            (RebalanceIntensity.MEDIUM, 400_000_000_000_000_000),
            (RebalanceIntensity.AGGRESSIVE, 700_000_000_000_000_000),
        ],
    )
    def test_percentage_per_intensity(
        self, planner: RebalancePlanner, intensity: RebalanceIntensity, expected: int
    ) -> None:
        plan = planner.plan(intensity, [_weth()])
        assert plan.steps[0].amount_to_swap_raw == expected

    def test_percentages_are_increasing(self) -> None:
        assert (
            INTENSITY_PERCENTAGES[RebalanceIntensity.SOFT]
            < INTENSITY_PERCENTAGES[RebalanceIntensity.MEDIUM]
            < INTENSITY_PERCENTAGES[RebalanceIntensity.AGGRESSIVE]
        )

    def test_amounts_always_add_up(self, planner: RebalancePlanner) -> None:
        """Floor division never loses or creates units."""
        raw = 123_456_789_012_345_677
        plan = planner.plan(RebalanceIntensity.SOFT, [_weth(raw)])
        step = plan.steps[0]
        assert step.amount_to_swap_raw + step.remaining_balance_raw == raw
        assert step.amount_to_swap_raw == raw * 15 // 100

    def test_stable_asset_excluded_by_address_or_symbol(
        self, planner: RebalancePlanner
    ) -> None:
        renamed = TokenBalance(USDC_ADDRESS.lower(), "usdc.e", 10**9, 6)
        plan = planner.plan(RebalanceIntensity.AGGRESSIVE, [_usdc(), renamed])
        assert plan.steps == []
        assert plan.total_swap_amount == Decimal("0")

    def test_zero_balance_skipped(self, planner: RebalancePlanner) -> None:
        plan = planner.plan(RebalanceIntensity.AGGRESSIVE, [_weth(0)])
        assert plan.steps == []

    def test_duplicate_symbol_keeps_first(self, planner: RebalancePlanner) -> None:
        plan = planner.plan(
            RebalanceIntensity.MEDIUM, [_weth(ONE_WETH), _weth(5 * ONE_WETH)]
        )
        assert len(plan.steps) == 1
        assert plan.steps[0].current_balance_raw == ONE_WETH

    def test_dust_step_dropped(self, planner: RebalancePlanner) -> None:
        """15% of 0.005 WETH is 0.00075, below the 0.001 minimum."""
        plan = planner.plan(RebalanceIntensity.SOFT, [_weth(5 * 10**15)])
        assert plan.steps == []

    def test_multiple_tokens_keep_order(self, planner: RebalancePlanner) -> None:
        cbbtc = TokenBalance(CBBTC_ADDRESS, "cbBTC", 2 * 10**8, 8)
        plan = planner.plan(RebalanceIntensity.MEDIUM, [cbbtc, _usdc(), _weth()])
        assert [s.symbol for s in plan.steps] == ["cbBTC", "WETH"]
        assert plan.steps[0].amount_to_swap_raw == 80_000_000
        assert plan.total_swap_amount == Decimal("1.2")
