"""Tests for automation config validation and gating state."""

from decimal import Decimal

import pytest

from rebalancer.automation.state import (
    DAY_MS,
    MINUTE_MS,
    AutomationState,
    config_to_dict,
    merge_config,
    validate_config,
)
from rebalancer.config import AutomationSettings
from rebalancer.exceptions import ConfigValidationError
from rebalancer.models import AutomationConfig, RebalanceIntensity, RebalanceRecord, Thresholds

T0 = 1_700_000_000_000


def _record(ts: int, success: bool = True) -> RebalanceRecord:
    return RebalanceRecord(
        timestamp_ms=ts,
        intensity=RebalanceIntensity.SOFT,
        volatility_bps=600,
        forced=False,
        success=success,
    )


class TestMergeConfig:
    def test_partial_thresholds_keep_other_values(self) -> None:
        merged = merge_config(AutomationConfig(), {"thresholds": {"medium": 8}})
        assert merged.thresholds == Thresholds(
            soft=Decimal("5.0"), medium=Decimal("8"), aggressive=Decimal("15.0")
        )

    def test_input_config_untouched(self) -> None:
        config = AutomationConfig()
        merge_config(config, {"cooldown_minutes": 5, "thresholds": {"soft": "1"}})
        assert config.cooldown_minutes == 60
        assert config.thresholds.soft == Decimal("5.0")

    def test_float_threshold_becomes_exact_decimal(self) -> None:
        merged = merge_config(AutomationConfig(), {"thresholds": {"soft": 2.5}})
        assert merged.thresholds.soft == Decimal("2.5")

    @pytest.mark.parametrize(
        "changes",
        [
            {"thresholds": {"soft": 12}},  # above medium
            {"thresholds": {"aggressive": 9}},  # below medium
            {"thresholds": {"soft": -1}},
            {"thresholds": {"extreme": 30}},
            {"thresholds": {"soft": "abc"}},
            {"thresholds": {"soft": True}},
            {"cooldown_minutes": -1},
            {"cooldown_minutes": 1.5},
            {"max_daily_rebalances": 0},
            {"enabled": "yes"},
            {"unknown_field": 1},
        ],
    )
    def test_invalid_updates_rejected(self, changes: dict) -> None:
        with pytest.raises(ConfigValidationError):
            merge_config(AutomationConfig(), changes)

    def test_equal_thresholds_allowed(self) -> None:
        merged = merge_config(
            AutomationConfig(),
            {"thresholds": {"soft": 10, "medium": 10, "aggressive": 10}},
        )
        validate_config(merged)

    def test_none_values_ignored(self) -> None:
        merged = merge_config(AutomationConfig(), {"enabled": None})
        assert merged.enabled is False


def test_config_to_dict_uses_rest_names() -> None:
    data = config_to_dict(AutomationConfig(enabled=True))
    assert data == {
        "enabled": True,
        "thresholds": {"soft": "5.0", "medium": "10.0", "aggressive": "15.0"},
        "cooldownMinutes": 60,
        "maxDailyRebalancings": 3,
        "notificationEnabled": True,
    }


class TestAutomationState:
    def test_from_settings(self) -> None:
        state = AutomationState.from_settings(
            AutomationSettings(enabled=True, cooldown_minutes=30), now_ms=T0
        )
        assert state.config.enabled is True
        assert state.config.cooldown_minutes == 30
        assert state.daily_window_start_ms == T0
        assert state.last_execution_ms == 0

    def test_from_settings_rejects_unordered_thresholds(self) -> None:
        with pytest.raises(ConfigValidationError):
            AutomationState.from_settings(
                AutomationSettings(soft_threshold=Decimal("20")), now_ms=T0
            )

    def test_never_executed_has_no_cooldown(self) -> None:
        state = AutomationState(daily_window_start_ms=T0)
        assert state.cooldown_active(T0) is False
        assert state.next_allowed_ms(T0) == T0

    def test_cooldown_window(self) -> None:
        state = AutomationState(daily_window_start_ms=T0)
        state.record_success(T0)
        assert state.cooldown_active(T0 + 59 * MINUTE_MS) is True
        assert state.next_allowed_ms(T0 + MINUTE_MS) == T0 + 60 * MINUTE_MS
        assert state.cooldown_active(T0 + 60 * MINUTE_MS) is False

    def test_zero_cooldown_never_active(self) -> None:
        state = AutomationState(
            config=AutomationConfig(cooldown_minutes=0), daily_window_start_ms=T0
        )
        state.record_success(T0)
        assert state.cooldown_active(T0) is False

    def test_daily_window_rolls_after_24h(self) -> None:
        state = AutomationState(daily_window_start_ms=T0, daily_count=3)
        assert state.daily_cap_reached() is True
        assert state.roll_daily_window(T0 + DAY_MS - 1) is False
        assert state.roll_daily_window(T0 + DAY_MS) is True
        assert state.daily_count == 0
        assert state.daily_window_start_ms == T0 + DAY_MS

    def test_history_trimmed_to_limit(self) -> None:
        state = AutomationState(history_limit=2)
        for i in range(4):
            state.record_attempt(_record(T0 + i))
        assert [r.timestamp_ms for r in state.history] == [T0 + 2, T0 + 3]
        assert state.last_result.timestamp_ms == T0 + 3

    def test_record_attempt_does_not_consume_budget(self) -> None:
        state = AutomationState()
        state.record_attempt(_record(T0, success=False))
        assert state.daily_count == 0
        assert state.last_execution_ms == 0

    def test_reset_daily(self) -> None:
        state = AutomationState(daily_count=2, daily_window_start_ms=T0)
        state.reset_daily(T0 + 5)
        assert state.daily_count == 0
        assert state.daily_window_start_ms == T0 + 5


def test_record_status_values() -> None:
    assert _record(T0).status == "success"
    assert _record(T0, success=False).status == "failed"
    partial = _record(T0)
    partial.errors.append("Failed to process WETH: boom")
    assert partial.status == "partial"
    assert partial.to_dict()["type"] == "soft"
