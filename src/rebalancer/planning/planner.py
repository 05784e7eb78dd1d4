"""Rebalance planner -- turns an intensity and vault balances into swap steps.

Each intensity converts a fixed share of every eligible token balance:
Soft 15%, Medium 40%, Aggressive 70%. The stable asset itself is never
planned, duplicate symbols keep their first entry, and steps whose swap
amount is dust (at or below the minimum, in token units) are dropped.
"""

from collections.abc import Sequence
from decimal import Decimal

from rebalancer.logging import get_logger
from rebalancer.models import (
    RebalanceIntensity,
    RebalancePlan,
    TokenBalance,
    TokenRebalanceStep,
)

logger = get_logger(__name__)

INTENSITY_PERCENTAGES: dict[RebalanceIntensity, int] = {
    RebalanceIntensity.SOFT: 15,
    RebalanceIntensity.MEDIUM: 40,
    RebalanceIntensity.AGGRESSIVE: 70,
}

# Heuristic stable proceeds per unit swapped; not a price
_STABLE_ESTIMATE_FACTOR = Decimal("0.8")
_STABLE_ESTIMATE_QUANTUM = Decimal("0.000001")


class RebalancePlanner:
    """Builds RebalancePlans against a fixed stable asset.

    Args:
        stable_token_address: Address of the asset swapped into.
        stable_token_symbol: Symbol of the asset swapped into.
        min_swap_amount: Dust threshold in token units.
    """

    def __init__(
        self,
        stable_token_address: str,
        stable_token_symbol: str,
        min_swap_amount: Decimal = Decimal("0.001"),
    ) -> None:
        self._stable_address = stable_token_address.lower()
        self._stable_symbol = stable_token_symbol.upper()
        self._min_swap_amount = min_swap_amount

    def is_stable(self, balance: TokenBalance) -> bool:
        return (
            balance.token_address.lower() == self._stable_address
            or balance.symbol.upper() == self._stable_symbol
        )

    def plan(
        self, intensity: RebalanceIntensity, balances: Sequence[TokenBalance]
    ) -> RebalancePlan:
        """Compute per-token steps for one rebalance.

        amount_to_swap_raw = floor(balance * pct / 100) and the remainder
        stays in the vault, so the two always add back up to the balance.
        """
        percentage = INTENSITY_PERCENTAGES[intensity]
        plan = RebalancePlan(intensity=intensity)
        seen_symbols: set[str] = set()

        for balance in balances:
            if balance.symbol in seen_symbols:
                continue
            seen_symbols.add(balance.symbol)

            if self.is_stable(balance):
                continue
            if balance.raw_balance <= 0:
                continue

            amount = balance.raw_balance * percentage // 100
            step = TokenRebalanceStep(
                token_address=balance.token_address,
                symbol=balance.symbol,
                current_balance_raw=balance.raw_balance,
                amount_to_swap_raw=amount,
                remaining_balance_raw=balance.raw_balance - amount,
                decimals=balance.decimals,
            )
            if step.amount_to_swap <= self._min_swap_amount:
                logger.debug(
                    "planner_dust_skipped",
                    symbol=balance.symbol,
                    amount=str(step.amount_to_swap),
                )
                continue

            plan.steps.append(step)
            plan.total_swap_amount += step.amount_to_swap

        plan.estimated_stable_received = (
            plan.total_swap_amount * _STABLE_ESTIMATE_FACTOR
        ).quantize(_STABLE_ESTIMATE_QUANTUM)

        logger.info(
            "rebalance_plan_built",
            intensity=intensity.value,
            percentage=percentage,
            steps=len(plan.steps),
            total_swap_amount=str(plan.total_swap_amount),
        )
        return plan
