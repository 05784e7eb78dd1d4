"""Automation runner -- wires triggers to per-vault decision engines.

Three trigger sources feed the same engines:
  1. TIMER:      every check interval, evaluate the primary vault
  2. VOLATILITY: each fresh monitor reading for the primary feed
  3. MANUAL:     API calls (trigger / force) routed through get_engine()

Each vault has its own engine with its own lock and state, so triggers for
one vault are serialized while different vaults proceed independently.
A trigger without volatility data is aborted without touching any counters.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable

from rebalancer.automation.engine import RebalanceDecisionEngine
from rebalancer.config import AppSettings
from rebalancer.exceptions import DataUnavailableError
from rebalancer.logging import get_logger
from rebalancer.models import Decision, VaultContext, VolatilityReading
from rebalancer.volatility.monitor import VolatilityMonitor

logger = get_logger(__name__)

EngineFactory = Callable[[VaultContext], RebalanceDecisionEngine]


class AutomationRunner:
    """Owns the engines and the background trigger loops.

    Args:
        settings: Application-wide settings.
        monitor: Volatility monitor supplying readings.
        primary: Vault evaluated by the timer and volatility triggers.
        engine_factory: Builds an engine for a vault on first use.
    """

    def __init__(
        self,
        settings: AppSettings,
        monitor: VolatilityMonitor,
        primary: VaultContext,
        engine_factory: EngineFactory,
    ) -> None:
        self._settings = settings
        self._monitor = monitor
        self._primary = primary
        self._engine_factory = engine_factory
        self._engines: dict[str, RebalanceDecisionEngine] = {}
        self._engines_lock = asyncio.Lock()
        self._running = False
        self._stop_event = asyncio.Event()
        self._volatility_task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def monitor(self) -> VolatilityMonitor:
        return self._monitor

    @property
    def primary_vault(self) -> str:
        return self._primary.address

    @property
    def is_running(self) -> bool:
        return self._running

    # ──────────────────────────────────────────────
    # Engines
    # ──────────────────────────────────────────────

    async def get_engine(self, context: VaultContext | None = None) -> RebalanceDecisionEngine:
        """Return the engine for a vault, creating and loading it on first use."""
        context = context or self._primary
        key = context.address.lower()
        engine = self._engines.get(key)
        if engine is not None:
            return engine
        async with self._engines_lock:
            engine = self._engines.get(key)
            if engine is None:
                # Balances in a request are a one-off snapshot; later triggers re-read them
                engine = self._engine_factory(dataclasses.replace(context, balances=None))
                await engine.load()
                self._engines[key] = engine
                logger.info("engine_created", vault=context.address)
        return engine

    def find_engine(self, vault: str | None = None) -> RebalanceDecisionEngine | None:
        """Lookup without creating. ``None`` means the primary vault."""
        return self._engines.get((vault or self._primary.address).lower())

    def engines(self) -> list[RebalanceDecisionEngine]:
        return list(self._engines.values())

    # ──────────────────────────────────────────────
    # Triggers
    # ──────────────────────────────────────────────

    def current_reading(self) -> VolatilityReading:
        """Latest reading for the primary feed.

        Raises:
            DataUnavailableError: If the monitor has no data yet.
        """
        return self._monitor.get_reading(self._settings.volatility.primary_symbol)

    async def trigger(
        self,
        reading: VolatilityReading | None = None,
        context: VaultContext | None = None,
    ) -> Decision:
        """Evaluate one gated trigger for a vault (primary by default).

        Raises:
            DataUnavailableError: If no reading is given and none is available.
        """
        if reading is None:
            reading = self.current_reading()
        engine = await self.get_engine(context)
        return await engine.evaluate(reading, context)

    async def _on_reading(self, symbol: str, reading: VolatilityReading) -> None:
        """Monitor listener: start a volatility trigger for the primary feed."""
        if symbol != self._settings.volatility.primary_symbol:
            return
        if self._volatility_task is not None and not self._volatility_task.done():
            logger.debug("volatility_trigger_pending", symbol=symbol)
            return
        self._volatility_task = asyncio.create_task(
            self._guarded(lambda: self.trigger(reading), "volatility")
        )

    async def _guarded(self, run: Callable[[], Awaitable[Decision]], source: str) -> None:
        try:
            decision = await run()
            logger.info(
                "trigger_evaluated",
                source=source,
                outcome=decision.outcome.value,
                skip_reason=decision.skip_reason.value if decision.skip_reason else None,
            )
        except asyncio.CancelledError:
            raise
        except DataUnavailableError as e:
            logger.warning("automation_trigger_aborted", source=source, reason=str(e))
        except Exception:
            logger.error("automation_trigger_error", source=source, exc_info=True)

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Start the monitor, then run the timer loop until stop() is called."""
        if not self._primary.address:
            logger.warning("no_primary_vault_configured")
        else:
            await self.get_engine()

        if self._settings.automation.trigger_on_volatility_update:
            self._monitor.add_listener(self._on_reading)
        await self._monitor.start()

        self._running = True
        self._stop_event.clear()
        logger.info(
            "automation_runner_started",
            primary_vault=self._primary.address,
            check_interval=self._settings.automation.check_interval_seconds,
            mode=self._settings.execution.mode,
        )
        try:
            await self._run_loop()
        finally:
            await self._monitor.stop()
            logger.info("automation_runner_stopped")

    async def stop(self) -> None:
        """Signal the runner to stop and wait for an in-flight volatility trigger."""
        self._running = False
        self._stop_event.set()
        if self._volatility_task is not None and not self._volatility_task.done():
            # A running saga is never cancelled mid-transaction
            await asyncio.gather(self._volatility_task, return_exceptions=True)

    async def _run_loop(self) -> None:
        interval = self._settings.automation.check_interval_seconds
        while self._running:
            if self._primary.address:
                await self._guarded(self.trigger, "timer")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass
