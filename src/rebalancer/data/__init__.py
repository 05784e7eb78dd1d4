"""Automation state persistence layer."""

from rebalancer.data.database import StateDatabase
from rebalancer.data.store import AutomationStateStore

__all__ = ["AutomationStateStore", "StateDatabase"]
