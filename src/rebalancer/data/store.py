"""Typed SQLite read/write abstraction for automation state.

Persists each vault's config and gating counters so cooldown and daily caps
survive restarts, and keeps an append-only rebalance history.

CRITICAL: Thresholds are stored as TEXT and restored as Decimal on read.
"""

import json
import time
from decimal import Decimal

from rebalancer.automation.state import AutomationState
from rebalancer.data.database import StateDatabase
from rebalancer.logging import get_logger
from rebalancer.models import AutomationConfig, RebalanceIntensity, RebalanceRecord, Thresholds

logger = get_logger(__name__)


class AutomationStateStore:
    """Async SQLite store for per-vault automation state.

    Usage:
        async with StateDatabase("data/automation.db") as database:
            store = AutomationStateStore(database)
            state = await store.load_state(vault)
    """

    def __init__(self, database: StateDatabase) -> None:
        self._database = database

    async def save_state(self, vault: str, state: AutomationState) -> None:
        """Upsert config and counters for a vault."""
        config = state.config
        await self._database.db.execute(
            "INSERT OR REPLACE INTO automation_state "
            "(vault, enabled, soft_threshold, medium_threshold, aggressive_threshold, "
            "cooldown_minutes, max_daily_rebalances, notifications_enabled, "
            "last_execution_ms, daily_count, daily_window_start_ms, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                vault.lower(),
                int(config.enabled),
                str(config.thresholds.soft),
                str(config.thresholds.medium),
                str(config.thresholds.aggressive),
                config.cooldown_minutes,
                config.max_daily_rebalances,
                int(config.notifications_enabled),
                state.last_execution_ms,
                state.daily_count,
                state.daily_window_start_ms,
                int(time.time() * 1000),
            ),
        )
        await self._database.db.commit()
        logger.debug("automation_state_saved", vault=vault)

    async def load_state(
        self, vault: str, history_limit: int = 50
    ) -> AutomationState | None:
        """Restore a vault's state, or None if it was never saved."""
        cursor = await self._database.db.execute(
            "SELECT enabled, soft_threshold, medium_threshold, aggressive_threshold, "
            "cooldown_minutes, max_daily_rebalances, notifications_enabled, "
            "last_execution_ms, daily_count, daily_window_start_ms "
            "FROM automation_state WHERE vault = ?",
            (vault.lower(),),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        history = await self.get_history(vault, limit=history_limit)
        state = AutomationState(
            config=AutomationConfig(
                enabled=bool(row[0]),
                thresholds=Thresholds(
                    soft=Decimal(row[1]),
                    medium=Decimal(row[2]),
                    aggressive=Decimal(row[3]),
                ),
                cooldown_minutes=row[4],
                max_daily_rebalances=row[5],
                notifications_enabled=bool(row[6]),
            ),
            last_execution_ms=row[7],
            daily_count=row[8],
            daily_window_start_ms=row[9],
            last_result=history[-1] if history else None,
            history=history,
            history_limit=history_limit,
        )
        logger.info(
            "automation_state_loaded",
            vault=vault,
            daily_count=state.daily_count,
            last_execution_ms=state.last_execution_ms,
        )
        return state

    async def append_history(self, vault: str, record: RebalanceRecord) -> None:
        await self._database.db.execute(
            "INSERT INTO rebalance_history "
            "(vault, timestamp_ms, intensity, volatility_bps, forced, success, tx_hashes, errors) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                vault.lower(),
                record.timestamp_ms,
                record.intensity.value,
                record.volatility_bps,
                int(record.forced),
                int(record.success),
                json.dumps(record.tx_hashes),
                json.dumps(record.errors),
            ),
        )
        await self._database.db.commit()

    async def get_history(self, vault: str, limit: int = 50) -> list[RebalanceRecord]:
        """Most recent records for a vault, oldest first."""
        cursor = await self._database.db.execute(
            "SELECT timestamp_ms, intensity, volatility_bps, forced, success, tx_hashes, errors "
            "FROM rebalance_history WHERE vault = ? "
            "ORDER BY id DESC LIMIT ?",
            (vault.lower(), limit),
        )
        rows = await cursor.fetchall()
        records = [
            RebalanceRecord(
                timestamp_ms=row[0],
                intensity=RebalanceIntensity(row[1]),
                volatility_bps=row[2],
                forced=bool(row[3]),
                success=bool(row[4]),
                tx_hashes=json.loads(row[5]),
                errors=json.loads(row[6]),
            )
            for row in rows
        ]
        records.reverse()
        return records
