"""Automation layer -- gating state and the rebalance decision engine."""

from rebalancer.automation.engine import RebalanceDecisionEngine, select_intensity
from rebalancer.automation.state import AutomationState, merge_config, validate_config

__all__ = [
    "AutomationState",
    "RebalanceDecisionEngine",
    "merge_config",
    "select_intensity",
    "validate_config",
]
