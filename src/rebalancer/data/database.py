"""Async SQLite database manager for automation state persistence.

Uses aiosqlite for non-blocking database operations with WAL mode
so status reads do not block state writes.
"""

import os
from typing import Self

import aiosqlite

from rebalancer.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS automation_state (
    vault TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL,
    soft_threshold TEXT NOT NULL,
    medium_threshold TEXT NOT NULL,
    aggressive_threshold TEXT NOT NULL,
    cooldown_minutes INTEGER NOT NULL,
    max_daily_rebalances INTEGER NOT NULL,
    notifications_enabled INTEGER NOT NULL,
    last_execution_ms INTEGER NOT NULL DEFAULT 0,
    daily_count INTEGER NOT NULL DEFAULT 0,
    daily_window_start_ms INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS rebalance_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vault TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    intensity TEXT NOT NULL,
    volatility_bps INTEGER,
    forced INTEGER NOT NULL,
    success INTEGER NOT NULL,
    tx_hashes TEXT NOT NULL,
    errors TEXT NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_history_vault_ts
    ON rebalance_history(vault, timestamp_ms);
"""


class StateDatabase:
    """Async SQLite connection manager for automation state.

    Usage:
        async with StateDatabase("data/automation.db") as db:
            await db.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/automation.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()
        await self._ensure_schema_version()

        logger.info("state_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("state_db_closed", db_path=self._db_path)

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
