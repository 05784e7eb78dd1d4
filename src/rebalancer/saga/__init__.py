"""Transaction saga -- ordered, retryable, best-effort plan execution."""

from rebalancer.saga.retry import RetryPolicy
from rebalancer.saga.saga import TransactionSaga

__all__ = ["RetryPolicy", "TransactionSaga"]
