"""Per-vault automation state: config, gating counters, and recent results.

One AutomationState belongs to exactly one RebalanceDecisionEngine, which
is its only writer. Readers (status endpoints) may see slightly stale data.
"""

import dataclasses
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from rebalancer.config import AutomationSettings
from rebalancer.exceptions import ConfigValidationError
from rebalancer.models import AutomationConfig, Decision, RebalanceRecord, Thresholds

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def _as_decimal(name: str, value: object) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ConfigValidationError(f"{name} must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigValidationError(f"{name} must be a number") from None
    if not result.is_finite():
        raise ConfigValidationError(f"{name} must be a finite number")
    return result


def _as_int(name: str, value: object) -> int:
    number = _as_decimal(name, value)
    if number != number.to_integral_value():
        raise ConfigValidationError(f"{name} must be a whole number")
    return int(number)


def validate_config(config: AutomationConfig) -> None:
    """Check every config invariant.

    Raises:
        ConfigValidationError: On negative or unordered thresholds, a negative
            cooldown, or a daily cap below 1.
    """
    t = config.thresholds
    for name, value in (("soft", t.soft), ("medium", t.medium), ("aggressive", t.aggressive)):
        if value < 0:
            raise ConfigValidationError(f"Threshold {name} must be non-negative")
    if not t.soft <= t.medium <= t.aggressive:
        raise ConfigValidationError(
            "Thresholds must be ordered soft <= medium <= aggressive"
        )
    if config.cooldown_minutes < 0:
        raise ConfigValidationError("cooldownMinutes must be >= 0")
    if config.max_daily_rebalances < 1:
        raise ConfigValidationError("maxDailyRebalancings must be >= 1")


def merge_config(config: AutomationConfig, changes: dict) -> AutomationConfig:
    """Return a validated copy of ``config`` with ``changes`` applied.

    ``changes`` uses field names (``cooldown_minutes``, ...). ``thresholds``
    may be partial. Unknown keys are rejected.

    Raises:
        ConfigValidationError: If any value is malformed or the merged
            config breaks an invariant. The input config is never modified.
    """
    updates: dict = {}
    for key, value in changes.items():
        if value is None:
            continue
        if key == "enabled" or key == "notifications_enabled":
            if not isinstance(value, bool):
                raise ConfigValidationError(f"{key} must be a boolean")
            updates[key] = value
        elif key == "thresholds":
            if not isinstance(value, dict):
                raise ConfigValidationError("thresholds must be an object")
            unknown = set(value) - {"soft", "medium", "aggressive"}
            if unknown:
                raise ConfigValidationError(f"Unknown thresholds: {sorted(unknown)}")
            updates["thresholds"] = dataclasses.replace(
                config.thresholds,
                **{k: _as_decimal(f"thresholds.{k}", v) for k, v in value.items()},
            )
        elif key in ("cooldown_minutes", "max_daily_rebalances"):
            updates[key] = _as_int(key, value)
        else:
            raise ConfigValidationError(f"Unknown config field: {key}")

    merged = dataclasses.replace(
        config,
        thresholds=dataclasses.replace(updates.pop("thresholds", config.thresholds)),
        **updates,
    )
    validate_config(merged)
    return merged


def config_to_dict(config: AutomationConfig) -> dict:
    """Serialize config with the REST field names. Decimals become strings."""
    return {
        "enabled": config.enabled,
        "thresholds": {
            "soft": str(config.thresholds.soft),
            "medium": str(config.thresholds.medium),
            "aggressive": str(config.thresholds.aggressive),
        },
        "cooldownMinutes": config.cooldown_minutes,
        "maxDailyRebalancings": config.max_daily_rebalances,
        "notificationEnabled": config.notifications_enabled,
    }


@dataclass
class AutomationState:
    """Mutable gating state for one vault."""

    config: AutomationConfig = field(default_factory=AutomationConfig)
    last_execution_ms: int = 0  # 0 = never
    daily_count: int = 0
    daily_window_start_ms: int = 0
    last_result: RebalanceRecord | None = None
    last_decision: Decision | None = None
    history: list[RebalanceRecord] = field(default_factory=list)
    history_limit: int = 50

    @classmethod
    def from_settings(
        cls, settings: AutomationSettings, now_ms: int, history_limit: int = 50
    ) -> "AutomationState":
        config = AutomationConfig(
            enabled=settings.enabled,
            thresholds=Thresholds(
                soft=settings.soft_threshold,
                medium=settings.medium_threshold,
                aggressive=settings.aggressive_threshold,
            ),
            cooldown_minutes=settings.cooldown_minutes,
            max_daily_rebalances=settings.max_daily_rebalances,
            notifications_enabled=settings.notifications_enabled,
        )
        validate_config(config)
        return cls(
            config=config,
            daily_window_start_ms=now_ms,
            history_limit=history_limit,
        )

    def roll_daily_window(self, now_ms: int) -> bool:
        """Start a new daily window once 24h have passed. Returns True if rolled."""
        if now_ms - self.daily_window_start_ms >= DAY_MS:
            self.daily_count = 0
            self.daily_window_start_ms = now_ms
            return True
        return False

    def daily_cap_reached(self) -> bool:
        return self.daily_count >= self.config.max_daily_rebalances

    def cooldown_ms(self) -> int:
        return self.config.cooldown_minutes * MINUTE_MS

    def cooldown_active(self, now_ms: int) -> bool:
        if self.last_execution_ms == 0:
            return False
        return now_ms - self.last_execution_ms < self.cooldown_ms()

    def next_allowed_ms(self, now_ms: int) -> int:
        if self.cooldown_active(now_ms):
            return self.last_execution_ms + self.cooldown_ms()
        return now_ms

    def record_attempt(self, record: RebalanceRecord) -> None:
        """Remember a finished saga run, successful or not."""
        self.last_result = record
        self.history.append(record)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]

    def record_success(self, now_ms: int) -> None:
        """Consume cooldown and one daily slot. Only called after a successful saga."""
        self.last_execution_ms = now_ms
        self.daily_count += 1

    def reset_daily(self, now_ms: int) -> None:
        self.daily_count = 0
        self.daily_window_start_ms = now_ms
