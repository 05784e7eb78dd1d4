"""Shared data models for the vault rebalancer.

CRITICAL: Token amounts are raw ints (smallest unit) or Decimal. Never use
float for prices, balances, or thresholds.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum


class RebalanceIntensity(str, Enum):
    """How aggressively to convert held tokens into the stable asset."""

    SOFT = "soft"
    MEDIUM = "medium"
    AGGRESSIVE = "aggressive"


class DecisionOutcome(str, Enum):
    """Result of evaluating one trigger."""

    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Why a trigger was gated. Skips are normal outcomes, not failures."""

    DISABLED = "disabled"
    DAILY_CAP_REACHED = "daily_cap_reached"
    COOLDOWN_ACTIVE = "cooldown_active"
    BELOW_THRESHOLD = "below_threshold"


class SagaStage(str, Enum):
    """Furthest sub-step a token reached inside the saga, in execution order."""

    PENDING = "pending"
    SYNCED = "synced"
    REGISTERED = "registered"
    VERIFIED = "verified"
    WITHDRAWN = "withdrawn"
    APPROVED = "approved"
    SWAPPED = "swapped"
    COMPLETED = "completed"


@dataclass(frozen=True)
class VolatilitySample:
    """One observed price. Sequences are ordered oldest to newest."""

    price: Decimal
    timestamp: int  # Unix seconds


@dataclass(frozen=True)
class VolatilityReading:
    """Volatility magnitude derived from a sample window."""

    magnitude_bps: int
    computed_at: float = field(default_factory=time.time)
    feed_symbol: str = ""
    degraded: bool = False  # True when produced by the confidence fallback

    @property
    def percent(self) -> Decimal:
        """Magnitude as percent volatility (100 bps = 1%)."""
        return Decimal(self.magnitude_bps) / Decimal(100)


@dataclass(frozen=True)
class PriceQuote:
    """Latest oracle price with its confidence interval."""

    symbol: str
    price: Decimal
    confidence: Decimal
    publish_time: int  # Unix seconds


@dataclass
class Thresholds:
    """Percent volatility at which each intensity is selected."""

    soft: Decimal = Decimal("5.0")
    medium: Decimal = Decimal("10.0")
    aggressive: Decimal = Decimal("15.0")


@dataclass
class AutomationConfig:
    """Runtime automation config. Changed only through validated updates."""

    enabled: bool = False
    thresholds: Thresholds = field(default_factory=Thresholds)
    cooldown_minutes: int = 60
    max_daily_rebalances: int = 3
    notifications_enabled: bool = True


@dataclass
class TokenBalance:
    """A token held by the vault, in raw smallest-unit amounts."""

    token_address: str
    symbol: str
    raw_balance: int
    decimals: int

    @property
    def formatted(self) -> Decimal:
        """Balance in human-readable token units."""
        return format_units(self.raw_balance, self.decimals)

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenBalance":
        """Parse a balance entry as sent by API callers.

        ``balance`` is read as a raw integer first. If that fails it is
        treated as a human-readable decimal and scaled by ``decimals``.
        """
        decimals = int(payload.get("decimals", 18))
        if decimals < 0:
            raise ValueError(f"Invalid decimals {decimals}")
        raw_value = str(payload.get("balance", "0")).strip()
        try:
            raw_balance = int(raw_value)
        except ValueError:
            try:
                amount = Decimal(raw_value)
            except InvalidOperation as e:
                raise ValueError(f"Invalid balance {raw_value!r}") from e
            if not amount.is_finite():
                raise ValueError(f"Invalid balance {raw_value!r}")
            try:
                raw_balance = parse_units(amount, decimals)
            except ArithmeticError as e:
                raise ValueError(f"Invalid balance {raw_value!r}") from e
        if raw_balance < 0:
            raise ValueError(f"Negative balance {raw_value!r}")
        return cls(
            token_address=str(payload.get("address", "")),
            symbol=str(payload.get("symbol", "")),
            raw_balance=raw_balance,
            decimals=decimals,
        )


@dataclass
class VaultContext:
    """Everything the saga needs to act on one vault."""

    address: str
    operator_address: str  # delegated signer address, receives withdrawals
    jwt: str = ""
    balances: list[TokenBalance] | None = None  # None means read from chain


@dataclass
class TokenRebalanceStep:
    """Planned conversion for one token.

    Invariant: amount_to_swap_raw + remaining_balance_raw == current_balance_raw.
    """

    token_address: str
    symbol: str
    current_balance_raw: int
    amount_to_swap_raw: int
    remaining_balance_raw: int
    decimals: int

    @property
    def amount_to_swap(self) -> Decimal:
        return format_units(self.amount_to_swap_raw, self.decimals)


@dataclass
class RebalancePlan:
    """Ordered per-token steps for one rebalance."""

    intensity: RebalanceIntensity
    steps: list[TokenRebalanceStep] = field(default_factory=list)
    total_swap_amount: Decimal = Decimal("0")
    # Heuristic only, not a price
    estimated_stable_received: Decimal = Decimal("0")


@dataclass
class SwapQuote:
    """Quote returned by a SwapProvider, opaque beyond these fields."""

    token_in: str
    token_out: str
    amount_in_raw: int
    amount_out_min_raw: int
    recipient: str
    payload: dict = field(default_factory=dict)


@dataclass
class TokenStepRecord:
    """Per-token progress through the saga, for manual reconciliation."""

    token_address: str
    symbol: str
    amount_raw: int
    stage: SagaStage = SagaStage.PENDING
    tx_hashes: dict[str, str] = field(default_factory=dict)  # action -> hash
    error: str | None = None


@dataclass
class SagaResult:
    """Outcome of one saga run. Hashes only ever accumulate."""

    success: bool = False
    completed_tx_hashes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    token_records: list[TokenStepRecord] = field(default_factory=list)


@dataclass
class RebalanceRecord:
    """One attempted rebalance, kept for status and history."""

    timestamp_ms: int
    intensity: RebalanceIntensity
    volatility_bps: int | None
    forced: bool
    success: bool
    tx_hashes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """'success', 'partial' (some tokens failed), or 'failed'."""
        if not self.success:
            return "failed"
        return "partial" if self.errors else "success"

    def to_dict(self) -> dict:
        return {
            "date": datetime.fromtimestamp(
                self.timestamp_ms / 1000, tz=timezone.utc
            ).isoformat(),
            "timestamp": self.timestamp_ms,
            "type": self.intensity.value,
            "volatility": self.volatility_bps,
            "forced": self.forced,
            "status": self.status,
            "success": self.success,
            "transactionHashes": list(self.tx_hashes),
            "errors": list(self.errors),
        }


@dataclass
class Decision:
    """Result of one trigger evaluation."""

    outcome: DecisionOutcome
    skip_reason: SkipReason | None = None
    intensity: RebalanceIntensity | None = None
    reading: VolatilityReading | None = None
    record: RebalanceRecord | None = None
    saga_result: SagaResult | None = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "skipReason": self.skip_reason.value if self.skip_reason else None,
            "intensity": self.intensity.value if self.intensity else None,
            "volatilityBps": self.reading.magnitude_bps if self.reading else None,
            "degraded": self.reading.degraded if self.reading else False,
            "result": self.record.to_dict() if self.record else None,
            "tokens": [
                {
                    "symbol": r.symbol,
                    "tokenAddress": r.token_address,
                    "amount": str(r.amount_raw),
                    "stage": r.stage.value,
                    "transactions": dict(r.tx_hashes),
                    "error": r.error,
                }
                for r in (self.saga_result.token_records if self.saga_result else [])
            ],
        }


def format_units(raw: int, decimals: int) -> Decimal:
    """Convert a raw integer amount into token units."""
    return Decimal(raw).scaleb(-decimals)


def parse_units(amount: Decimal, decimals: int) -> int:
    """Convert token units into a raw integer amount, truncating dust."""
    return int(amount.scaleb(decimals))
