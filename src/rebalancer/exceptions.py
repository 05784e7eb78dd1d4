"""Custom exceptions for the vault rebalancer.

Decision, saga, and collaborator exceptions live here to avoid circular
imports between modules. Gating skips are not exceptions; they are
returned as Decision outcomes.
"""


class RebalancerError(Exception):
    """Base exception for all rebalancer errors."""


class ConfigValidationError(RebalancerError):
    """Raised when an automation config update is rejected. Nothing is applied."""


class DataUnavailableError(RebalancerError):
    """Raised when no price samples exist or the price source is down."""


class InsufficientBalanceError(RebalancerError):
    """Raised when the on-chain vault balance is below the planned swap amount."""


class StepFailedError(RebalancerError):
    """Raised when a state-changing call exhausts its retry attempts."""

    def __init__(self, step: str, attempts: int, last_error: BaseException) -> None:
        self.step = step
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed to {step} after {attempts} attempts: {last_error}")


class TransactionRevertedError(RebalancerError):
    """Raised when a submitted transaction is mined with a failed status."""

    def __init__(self, tx_hash: str, action: str) -> None:
        self.tx_hash = tx_hash
        self.action = action
        super().__init__(f"{action} transaction reverted: {tx_hash}")


class SwapQuoteError(RebalancerError):
    """Raised when the swap service cannot produce a quote."""


class SwapPrecheckError(RebalancerError):
    """Raised when a signed quote fails precheck. No swap is sent."""


class SwapExecutionError(RebalancerError):
    """Raised when the swap service fails to execute a prechecked quote."""
