"""Rebalance planning -- intensity percentages and per-token swap steps."""

from rebalancer.planning.planner import INTENSITY_PERCENTAGES, RebalancePlanner

__all__ = ["INTENSITY_PERCENTAGES", "RebalancePlanner"]
