"""Tests for RebalanceDecisionEngine.

Verifies:
- Intensity selection with inclusive thresholds, highest first
- Gates in order: disabled, daily cap, cooldown, then below threshold
- Only a successful saga consumes cooldown and a daily slot
- Force bypasses every gate and restores the cooldown on all exit paths
- Timeouts keep already recorded hashes
- Concurrent triggers for one vault are serialized
- Notifications only after success, and notifier errors never fail a run
- Every decision is persisted when a store is configured
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from rebalancer.automation.engine import RebalanceDecisionEngine, select_intensity
from rebalancer.automation.state import DAY_MS, MINUTE_MS, AutomationState
from rebalancer.config import USDC_ADDRESS, WETH_ADDRESS
from rebalancer.data.store import AutomationStateStore
from rebalancer.execution.paper_vault import PaperVaultClient
from rebalancer.models import (
    AutomationConfig,
    DecisionOutcome,
    RebalanceIntensity,
    SagaResult,
    SkipReason,
    TokenBalance,
    VaultContext,
    VolatilityReading,
)
from rebalancer.notify.notifier import Notifier
from rebalancer.planning.planner import RebalancePlanner
from rebalancer.saga.saga import TransactionSaga

VAULT = "0x" + "a" * 40
OPERATOR = "0x" + "b" * 40
T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, now_ms: int = T0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def _reading(bps: int) -> VolatilityReading:
    return VolatilityReading(magnitude_bps=bps, feed_symbol="WETH")


def _saga(success: bool = True) -> AsyncMock:
    """Saga mock that records one hash per run when ``success``."""
    saga = AsyncMock(spec=TransactionSaga)

    async def execute(plan, context, result=None):
        result = result if result is not None else SagaResult()
        if success:
            result.completed_tx_hashes.append("0x" + "1" * 64)
        else:
            result.errors.append("All rebalancing steps failed")
        result.success = success
        return result

    saga.execute.side_effect = execute
    return saga


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def planner() -> RebalancePlanner:
    return RebalancePlanner(USDC_ADDRESS, "USDC")


@pytest.fixture
def context() -> VaultContext:
    return VaultContext(address=VAULT, operator_address=OPERATOR, jwt="jwt")


@pytest.fixture
def make_engine(clock: FakeClock, planner: RebalancePlanner, context: VaultContext, paper_vault: PaperVaultClient):
    def _make(saga=None, notifier=None, store=None, timeout=600.0, **config) -> RebalanceDecisionEngine:
        state = AutomationState(
            config=AutomationConfig(enabled=True, **config),
            daily_window_start_ms=clock(),
        )
        return RebalanceDecisionEngine(
            context=context,
            state=state,
            planner=planner,
            saga=saga or _saga(),
            vault_client=paper_vault,
            tracked_tokens=[WETH_ADDRESS],
            notifier=notifier,
            store=store,
            saga_timeout_seconds=timeout,
            clock_ms=clock,
        )

    return _make


class TestSelectIntensity:
    @pytest.mark.parametrize(
        "bps,expected",
        [
            (499, None),
            (500, RebalanceIntensity.SOFT),
            (999, RebalanceIntensity.SOFT),
            (1000, RebalanceIntensity.MEDIUM),
            (1200, RebalanceIntensity.MEDIUM),
            (1500, RebalanceIntensity.AGGRESSIVE),
            (9000, RebalanceIntensity.AGGRESSIVE),
        ],
    )
    def test_default_thresholds(self, bps: int, expected: RebalanceIntensity | None) -> None:
        assert select_intensity(_reading(bps), AutomationConfig()) == expected


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_twelve_percent_runs_medium_rebalance(
        self, make_engine, paper_saga: TransactionSaga, paper_vault: PaperVaultClient, clock: FakeClock
    ) -> None:
        """Enabled, no prior run, 12% volatility: Medium sells 40% of 1 WETH."""
        engine = make_engine(saga=paper_saga)

        decision = await engine.evaluate(_reading(1200))

        assert decision.outcome == DecisionOutcome.EXECUTED
        assert decision.intensity == RebalanceIntensity.MEDIUM
        assert decision.saga_result.token_records[0].amount_raw == 4 * 10**17
        assert await paper_vault.get_balance(VAULT, WETH_ADDRESS) == 6 * 10**17
        assert engine.state.daily_count == 1
        assert engine.state.last_execution_ms == clock()
        assert engine.state.last_result.success is True

    @pytest.mark.asyncio
    async def test_disabled_skips(self, make_engine) -> None:
        saga = _saga()
        engine = make_engine(saga=saga)
        engine.state.config.enabled = False

        decision = await engine.evaluate(_reading(5000))

        assert decision.skip_reason == SkipReason.DISABLED
        saga.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_below_threshold_leaves_state_unchanged(self, make_engine) -> None:
        saga = _saga()
        engine = make_engine(saga=saga)

        decision = await engine.evaluate(_reading(499))

        assert decision.outcome == DecisionOutcome.SKIPPED
        assert decision.skip_reason == SkipReason.BELOW_THRESHOLD
        assert engine.state.daily_count == 0
        assert engine.state.last_execution_ms == 0
        assert engine.state.history == []
        saga.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_run(self, make_engine, clock: FakeClock) -> None:
        engine = make_engine(cooldown_minutes=60)

        await engine.evaluate(_reading(600))
        clock.advance(59 * MINUTE_MS)
        blocked = await engine.evaluate(_reading(600))
        clock.advance(MINUTE_MS)
        allowed = await engine.evaluate(_reading(600))

        assert blocked.skip_reason == SkipReason.COOLDOWN_ACTIVE
        assert allowed.outcome == DecisionOutcome.EXECUTED
        assert engine.state.daily_count == 2

    @pytest.mark.asyncio
    async def test_daily_cap_checked_before_cooldown(self, make_engine, clock: FakeClock) -> None:
        engine = make_engine(cooldown_minutes=0, max_daily_rebalances=2)

        for _ in range(2):
            await engine.evaluate(_reading(600))
        capped = await engine.evaluate(_reading(600))

        assert capped.skip_reason == SkipReason.DAILY_CAP_REACHED
        assert engine.state.daily_count == 2

        clock.advance(DAY_MS)
        rolled = await engine.evaluate(_reading(600))
        assert rolled.outcome == DecisionOutcome.EXECUTED
        assert engine.state.daily_count == 1

    @pytest.mark.asyncio
    async def test_failed_saga_consumes_no_budget(self, make_engine) -> None:
        engine = make_engine(saga=_saga(success=False))

        decision = await engine.evaluate(_reading(2000))

        assert decision.outcome == DecisionOutcome.FAILED
        assert engine.state.daily_count == 0
        assert engine.state.last_execution_ms == 0
        assert engine.state.last_result.status == "failed"
        assert len(engine.state.history) == 1

    @pytest.mark.asyncio
    async def test_saga_exception_recorded_as_failure(self, make_engine) -> None:
        saga = AsyncMock(spec=TransactionSaga)
        saga.execute.side_effect = RuntimeError("rpc down")
        engine = make_engine(saga=saga)

        decision = await engine.evaluate(_reading(2000))

        assert decision.outcome == DecisionOutcome.FAILED
        assert decision.record.errors == ["rpc down"]
        assert engine.state.daily_count == 0

    @pytest.mark.asyncio
    async def test_timeout_keeps_recorded_hashes(self, make_engine) -> None:
        saga = AsyncMock(spec=TransactionSaga)

        async def slow(plan, context, result):
            result.completed_tx_hashes.append("0x" + "2" * 64)
            await asyncio.sleep(10)

        saga.execute.side_effect = slow
        engine = make_engine(saga=saga, timeout=0.05)

        decision = await engine.evaluate(_reading(2000))

        assert decision.record.tx_hashes == ["0x" + "2" * 64]
        assert decision.record.errors == ["Saga timed out after 0.05s"]
        assert decision.record.status == "partial"
        assert engine.state.daily_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_triggers_are_serialized(self, make_engine) -> None:
        saga = AsyncMock(spec=TransactionSaga)

        async def execute(plan, context, result):
            await asyncio.sleep(0.01)
            result.completed_tx_hashes.append("0x" + "3" * 64)
            result.success = True
            return result

        saga.execute.side_effect = execute
        engine = make_engine(saga=saga, cooldown_minutes=60)

        decisions = await asyncio.gather(
            engine.evaluate(_reading(2000)), engine.evaluate(_reading(2000))
        )

        assert sorted(d.outcome.value for d in decisions) == ["executed", "skipped"]
        assert saga.execute.await_count == 1
        assert engine.state.daily_count == 1

    @pytest.mark.asyncio
    async def test_request_balances_override_chain_read(
        self, make_engine, context: VaultContext
    ) -> None:
        saga = _saga()
        engine = make_engine(saga=saga)
        supplied = VaultContext(
            address=VAULT,
            operator_address=OPERATOR,
            jwt="jwt",
            balances=[TokenBalance(WETH_ADDRESS, "WETH", 2 * 10**18, 18)],
        )

        await engine.evaluate(_reading(2000), supplied)

        plan = saga.execute.await_args.args[0]
        assert plan.steps[0].current_balance_raw == 2 * 10**18
        assert plan.intensity == RebalanceIntensity.AGGRESSIVE


class TestForce:
    @pytest.mark.asyncio
    async def test_force_bypasses_cooldown_and_restores_it(self, make_engine) -> None:
        engine = make_engine(cooldown_minutes=60)
        await engine.evaluate(_reading(600))

        blocked = await engine.evaluate(_reading(600))
        forced = await engine.force(RebalanceIntensity.AGGRESSIVE)

        assert blocked.skip_reason == SkipReason.COOLDOWN_ACTIVE
        assert forced.outcome == DecisionOutcome.EXECUTED
        assert forced.record.forced is True
        assert engine.state.config.cooldown_minutes == 60
        assert engine.state.daily_count == 2

    @pytest.mark.asyncio
    async def test_force_restores_cooldown_when_saga_raises(self, make_engine) -> None:
        saga = AsyncMock(spec=TransactionSaga)
        saga.execute.side_effect = RuntimeError("boom")
        engine = make_engine(saga=saga, cooldown_minutes=45)

        decision = await engine.force(RebalanceIntensity.SOFT)

        assert decision.outcome == DecisionOutcome.FAILED
        assert engine.state.config.cooldown_minutes == 45
        assert engine.state.daily_count == 0

    @pytest.mark.asyncio
    async def test_force_restores_cooldown_on_cancellation(self, make_engine) -> None:
        saga = AsyncMock(spec=TransactionSaga)
        started = asyncio.Event()

        async def hang(plan, context, result):
            started.set()
            await asyncio.sleep(10)

        saga.execute.side_effect = hang
        engine = make_engine(saga=saga, cooldown_minutes=30)

        task = asyncio.create_task(engine.force(RebalanceIntensity.SOFT))
        await started.wait()
        assert engine.state.config.cooldown_minutes == 0
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert engine.state.config.cooldown_minutes == 30

    @pytest.mark.asyncio
    async def test_force_ignores_daily_cap_and_disabled(self, make_engine) -> None:
        engine = make_engine(max_daily_rebalances=1)
        engine.state.config.enabled = False
        engine.state.daily_count = 1

        decision = await engine.force(RebalanceIntensity.MEDIUM)

        assert decision.outcome == DecisionOutcome.EXECUTED
        assert engine.state.daily_count == 2


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notified_only_on_success(self, make_engine) -> None:
        notifier = AsyncMock(spec=Notifier)
        ok = make_engine(notifier=notifier)
        failing = make_engine(saga=_saga(success=False), notifier=notifier)

        await ok.evaluate(_reading(2000))
        await failing.evaluate(_reading(2000))

        assert notifier.notify_rebalance.await_count == 1
        vault, record = notifier.notify_rebalance.await_args.args
        assert vault == VAULT
        assert record.success is True

    @pytest.mark.asyncio
    async def test_notifications_disabled(self, make_engine) -> None:
        notifier = AsyncMock(spec=Notifier)
        engine = make_engine(notifier=notifier, notifications_enabled=False)

        await engine.evaluate(_reading(2000))

        notifier.notify_rebalance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notifier_error_does_not_fail_rebalance(self, make_engine) -> None:
        notifier = AsyncMock(spec=Notifier)
        notifier.notify_rebalance.side_effect = RuntimeError("webhook down")
        engine = make_engine(notifier=notifier)

        decision = await engine.evaluate(_reading(2000))

        assert decision.outcome == DecisionOutcome.EXECUTED
        assert engine.state.daily_count == 1


class TestConfigAndReporting:
    @pytest.mark.asyncio
    async def test_update_config_applies_validated_changes(self, make_engine) -> None:
        engine = make_engine()
        config = await engine.update_config({"thresholds": {"soft": "2"}, "cooldown_minutes": 5})
        assert config.thresholds.soft == Decimal("2")
        assert engine.state.config.cooldown_minutes == 5

    @pytest.mark.asyncio
    async def test_reset_daily(self, make_engine, clock: FakeClock) -> None:
        engine = make_engine(max_daily_rebalances=1)
        await engine.evaluate(_reading(2000))
        clock.advance(5)

        await engine.reset_daily()

        assert engine.state.daily_count == 0
        assert engine.state.daily_window_start_ms == clock()

    @pytest.mark.asyncio
    async def test_status_and_history(self, make_engine, clock: FakeClock) -> None:
        engine = make_engine(cooldown_minutes=60)
        await engine.evaluate(_reading(700))
        clock.advance(MINUTE_MS)
        await engine.force(RebalanceIntensity.AGGRESSIVE)

        status = engine.status()["status"]
        assert status["dailyRebalancingsCount"] == 2
        assert status["isActive"] is True
        assert status["isRunning"] is False
        assert status["lastExecution"] == clock()
        assert status["nextAllowedRebalancing"] == clock() + 60 * MINUTE_MS
        assert status["lastRebalancing"]["type"] == "aggressive"
        assert status["lastDecision"]["outcome"] == "executed"

        history = engine.history()
        assert [h["type"] for h in history] == ["aggressive", "soft"]
        assert [h["forced"] for h in history] == [True, False]

    @pytest.mark.asyncio
    async def test_decisions_persisted(self, make_engine) -> None:
        store = AsyncMock(spec=AutomationStateStore)
        engine = make_engine(store=store)

        await engine.evaluate(_reading(100))
        store.append_history.assert_not_awaited()
        assert store.save_state.await_count == 1

        await engine.evaluate(_reading(2000))
        assert store.append_history.await_count == 1
        assert store.save_state.await_count == 2

    @pytest.mark.asyncio
    async def test_load_replaces_state(self, make_engine) -> None:
        store = AsyncMock(spec=AutomationStateStore)
        stored = AutomationState(daily_count=2, last_execution_ms=T0 - 1)
        store.load_state.return_value = stored
        engine = make_engine(store=store)

        await engine.load()

        assert engine.state is stored
