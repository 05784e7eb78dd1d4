"""Rebalance decision engine -- gates triggers and drives the saga.

Every automatic trigger is evaluated against three gates, in order:

  1. ENABLED:  automation switched off -> skip (disabled)
  2. DAILY:    roll the 24h window if due; cap reached -> skip (daily_cap_reached)
  3. COOLDOWN: inside cooldown since last success -> skip (cooldown_active)

then the reading picks an intensity from the highest threshold down
(``>=``, so a reading above every threshold is Aggressive). A reading below
``soft`` is skipped (below_threshold).

Force bypasses all three gates. It zeroes the cooldown for exactly one run
and restores it on every exit path.

Only a successful saga moves the cooldown and consumes a daily slot.
Failed runs are recorded but cost nothing. All mutations happen under one
asyncio.Lock, so concurrent triggers on the same vault queue up and each
sees the counters left by the previous one.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

import structlog

from rebalancer.automation.state import AutomationState, config_to_dict, merge_config
from rebalancer.execution.vault import VaultClient
from rebalancer.logging import get_logger
from rebalancer.models import (
    AutomationConfig,
    Decision,
    DecisionOutcome,
    RebalanceIntensity,
    RebalanceRecord,
    SagaResult,
    SkipReason,
    VaultContext,
    VolatilityReading,
)
from rebalancer.planning.planner import RebalancePlanner
from rebalancer.saga.saga import TransactionSaga

if TYPE_CHECKING:
    from rebalancer.data.store import AutomationStateStore
    from rebalancer.notify.notifier import Notifier

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def select_intensity(
    reading: VolatilityReading, config: AutomationConfig
) -> RebalanceIntensity | None:
    """Map a reading to an intensity, checking the highest threshold first."""
    percent = reading.percent
    thresholds = config.thresholds
    if percent >= thresholds.aggressive:
        return RebalanceIntensity.AGGRESSIVE
    if percent >= thresholds.medium:
        return RebalanceIntensity.MEDIUM
    if percent >= thresholds.soft:
        return RebalanceIntensity.SOFT
    return None


class RebalanceDecisionEngine:
    """Single writer for one vault's AutomationState.

    Args:
        context: Default vault handle used by automatic triggers.
        state: Gating state owned by this engine.
        planner: Builds plans from balances.
        saga: Executes plans.
        vault_client: Reads balances when the trigger supplies none.
        tracked_tokens: Tokens read from the vault for automatic triggers.
        notifier: Optional post-success notifier.
        store: Optional persistence for state and history.
        saga_timeout_seconds: Caller-level timeout around one saga run.
        clock_ms: Returns the current Unix time in milliseconds.
    """

    def __init__(
        self,
        context: VaultContext,
        state: AutomationState,
        planner: RebalancePlanner,
        saga: TransactionSaga,
        vault_client: VaultClient,
        tracked_tokens: Sequence[str] = (),
        notifier: Notifier | None = None,
        store: AutomationStateStore | None = None,
        saga_timeout_seconds: float = 600.0,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._context = context
        self._state = state
        self._planner = planner
        self._saga = saga
        self._vault_client = vault_client
        self._tracked_tokens = list(tracked_tokens)
        self._notifier = notifier
        self._store = store
        self._saga_timeout = saga_timeout_seconds
        self._clock_ms = clock_ms
        self._lock = asyncio.Lock()

    @property
    def vault(self) -> str:
        return self._context.address

    @property
    def state(self) -> AutomationState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def load(self) -> None:
        """Replace in-memory state with the persisted copy, if one exists."""
        if self._store is None:
            return
        stored = await self._store.load_state(
            self.vault, history_limit=self._state.history_limit
        )
        if stored is not None:
            self._state = stored

    # ──────────────────────────────────────────────
    # Triggers
    # ──────────────────────────────────────────────

    async def evaluate(
        self, reading: VolatilityReading, context: VaultContext | None = None
    ) -> Decision:
        """Run one automatic trigger through the gates and, if it passes, the saga."""
        async with self._lock:
            with structlog.contextvars.bound_contextvars(vault=self.vault):
                decision = self._gate(reading)
                if decision is None:
                    intensity = select_intensity(reading, self._state.config)
                    if intensity is None:
                        decision = self._skip(SkipReason.BELOW_THRESHOLD, reading)
                    else:
                        decision = await self._execute(
                            intensity, reading, forced=False, context=context
                        )
                self._state.last_decision = decision
                await self._persist(decision.record)
                return decision

    async def force(
        self,
        intensity: RebalanceIntensity,
        context: VaultContext | None = None,
        reading: VolatilityReading | None = None,
    ) -> Decision:
        """Execute immediately, bypassing the enabled, daily-cap and cooldown gates."""
        async with self._lock:
            with structlog.contextvars.bound_contextvars(vault=self.vault):
                self._state.roll_daily_window(self._clock_ms())
                original_cooldown = self._state.config.cooldown_minutes
                self._state.config.cooldown_minutes = 0
                logger.info(
                    "force_rebalance_started",
                    intensity=intensity.value,
                    original_cooldown=original_cooldown,
                )
                try:
                    decision = await self._execute(
                        intensity, reading, forced=True, context=context
                    )
                finally:
                    self._state.config.cooldown_minutes = original_cooldown
                self._state.last_decision = decision
                await self._persist(decision.record)
                return decision

    def _gate(self, reading: VolatilityReading) -> Decision | None:
        state = self._state
        now = self._clock_ms()

        if not state.config.enabled:
            return self._skip(SkipReason.DISABLED, reading)

        if state.roll_daily_window(now):
            logger.info("daily_window_reset", window_start_ms=now)
        if state.daily_cap_reached():
            return self._skip(SkipReason.DAILY_CAP_REACHED, reading)

        if state.cooldown_active(now):
            return self._skip(SkipReason.COOLDOWN_ACTIVE, reading)

        return None

    def _skip(self, reason: SkipReason, reading: VolatilityReading | None) -> Decision:
        logger.info(
            "automation_skipped",
            reason=reason.value,
            volatility_bps=reading.magnitude_bps if reading else None,
            daily_count=self._state.daily_count,
        )
        return Decision(
            outcome=DecisionOutcome.SKIPPED, skip_reason=reason, reading=reading
        )

    async def _execute(
        self,
        intensity: RebalanceIntensity,
        reading: VolatilityReading | None,
        forced: bool,
        context: VaultContext | None,
    ) -> Decision:
        context = context or self._context
        result = SagaResult()

        try:
            balances = context.balances
            if balances is None:
                balances = await self._vault_client.get_token_balances(
                    context.address, self._tracked_tokens
                )
            plan = self._planner.plan(intensity, balances)
            async with asyncio.timeout(self._saga_timeout):
                await self._saga.execute(plan, context, result)
        except TimeoutError:
            result.errors.append(f"Saga timed out after {self._saga_timeout}s")
            result.success = len(result.completed_tx_hashes) > 0
            logger.error(
                "saga_timeout",
                timeout=self._saga_timeout,
                recorded_txs=len(result.completed_tx_hashes),
            )
        except Exception as e:
            result.errors.append(str(e))
            result.success = len(result.completed_tx_hashes) > 0
            logger.error("rebalance_execution_error", error=str(e), exc_info=True)

        now = self._clock_ms()
        record = RebalanceRecord(
            timestamp_ms=now,
            intensity=intensity,
            volatility_bps=reading.magnitude_bps if reading else None,
            forced=forced,
            success=result.success,
            tx_hashes=list(result.completed_tx_hashes),
            errors=list(result.errors),
        )
        self._state.record_attempt(record)

        if result.success:
            self._state.record_success(now)
            logger.info(
                "rebalance_executed",
                intensity=intensity.value,
                forced=forced,
                tx_count=len(record.tx_hashes),
                daily_count=self._state.daily_count,
                status=record.status,
            )
            await self._notify(record)
        else:
            logger.warning(
                "rebalance_failed",
                intensity=intensity.value,
                forced=forced,
                errors=record.errors,
            )

        return Decision(
            outcome=DecisionOutcome.EXECUTED if result.success else DecisionOutcome.FAILED,
            intensity=intensity,
            reading=reading,
            record=record,
            saga_result=result,
        )

    async def _notify(self, record: RebalanceRecord) -> None:
        if self._notifier is None or not self._state.config.notifications_enabled:
            return
        try:
            await self._notifier.notify_rebalance(self.vault, record)
        except Exception:
            logger.error("rebalance_notification_failed", exc_info=True)

    async def _persist(self, record: RebalanceRecord | None = None) -> None:
        if self._store is None:
            return
        try:
            if record is not None:
                await self._store.append_history(self.vault, record)
            await self._store.save_state(self.vault, self._state)
        except Exception:
            logger.error("automation_state_persist_failed", exc_info=True)

    # ──────────────────────────────────────────────
    # Config and counters
    # ──────────────────────────────────────────────

    async def update_config(self, changes: dict) -> AutomationConfig:
        """Validate and apply a partial config update.

        Raises:
            ConfigValidationError: If the update is rejected. Nothing is applied.
        """
        async with self._lock:
            new_config = merge_config(self._state.config, changes)
            self._state.config = new_config
            logger.info("automation_config_updated", config=config_to_dict(new_config))
            await self._persist()
            return new_config

    async def reset_daily(self) -> None:
        async with self._lock:
            self._state.reset_daily(self._clock_ms())
            logger.info("daily_counter_reset")
            await self._persist()

    # ──────────────────────────────────────────────
    # Reporting (lock-free, may be slightly stale)
    # ──────────────────────────────────────────────

    def status(self) -> dict:
        state = self._state
        now = self._clock_ms()
        last = state.last_result
        return {
            "config": config_to_dict(state.config),
            "status": {
                "vault": self.vault,
                "dailyRebalancingsCount": state.daily_count,
                "isActive": state.config.enabled,
                "isRunning": self.is_busy,
                "lastRebalancing": last.to_dict() if last else None,
                "lastExecution": state.last_execution_ms or None,
                "nextAllowedRebalancing": state.next_allowed_ms(now),
                "dailyWindowStart": state.daily_window_start_ms,
                "lastDecision": (
                    state.last_decision.to_dict() if state.last_decision else None
                ),
            },
        }

    def history(self) -> list[dict]:
        return [record.to_dict() for record in reversed(self._state.history)]
