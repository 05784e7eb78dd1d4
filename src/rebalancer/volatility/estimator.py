"""Volatility estimation from price samples.

Volatility is the sample standard deviation (n-1 divisor) of simple
period-over-period returns, expressed in basis points and never below 1.
The figure is per sampling period; it is not annualized.

With fewer than two samples the estimator falls back to the oracle's
confidence interval, jittered by an injectable RNG and clamped to
[50, 500] bps. Readings produced that way are flagged ``degraded``.
"""

import random
import statistics
import time
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal

from rebalancer.exceptions import DataUnavailableError
from rebalancer.logging import get_logger
from rebalancer.models import PriceQuote, VolatilityReading, VolatilitySample

logger = get_logger(__name__)

_BPS = Decimal("10000")
_MIN_BPS = 1

FALLBACK_MIN_BPS = 50
FALLBACK_MAX_BPS = 500
FALLBACK_JITTER = (0.8, 1.2)


def _to_bps(value: Decimal) -> int:
    return int((value * _BPS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_returns(prices: Sequence[Decimal]) -> list[Decimal]:
    """Simple returns r_i = (p_i - p_{i-1}) / p_{i-1}.

    Raises:
        DataUnavailableError: If any price used as a base is not positive.
    """
    returns: list[Decimal] = []
    for prev, curr in zip(prices, prices[1:]):
        if prev <= 0:
            raise DataUnavailableError(f"Non-positive price in series: {prev}")
        returns.append((curr - prev) / prev)
    return returns


def volatility_bps(prices: Sequence[Decimal]) -> int:
    """Return the volatility of a chronological price series in basis points.

    Args:
        prices: At least two prices, oldest first.

    Raises:
        ValueError: If fewer than two prices are given.
    """
    if len(prices) < 2:
        raise ValueError("At least two prices are required")

    returns = compute_returns(prices)
    if len(returns) < 2:
        # A single return has no spread; report its magnitude instead
        return max(_MIN_BPS, _to_bps(abs(returns[0])))

    stddev = statistics.stdev(returns)
    return max(_MIN_BPS, _to_bps(stddev))


def fallback_volatility_bps(
    price: Decimal, confidence: Decimal, rng: random.Random
) -> int:
    """Degraded-mode estimate from the oracle confidence ratio."""
    if price <= 0:
        raise DataUnavailableError(f"Non-positive price for fallback: {price}")
    jitter = Decimal(str(rng.uniform(*FALLBACK_JITTER)))
    raw = _to_bps(confidence / price * jitter)
    return min(FALLBACK_MAX_BPS, max(FALLBACK_MIN_BPS, raw))


class VolatilityEstimator:
    """Turns a sample window into a VolatilityReading.

    Args:
        rng: Randomness for the degraded fallback. Seed it in tests.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        clock=time.time,
    ) -> None:
        self._rng = rng or random.Random()
        self._clock = clock

    def estimate(
        self,
        samples: Sequence[VolatilitySample],
        latest: PriceQuote | None = None,
        feed_symbol: str = "",
    ) -> VolatilityReading:
        """Estimate volatility for one feed.

        Raises:
            DataUnavailableError: If there are fewer than two samples and no
                latest quote to fall back on.
        """
        if len(samples) >= 2:
            bps = volatility_bps([s.price for s in samples])
            return VolatilityReading(
                magnitude_bps=bps,
                computed_at=self._clock(),
                feed_symbol=feed_symbol,
            )

        if latest is None:
            raise DataUnavailableError(
                f"No price samples available for {feed_symbol or 'feed'}"
            )

        bps = fallback_volatility_bps(latest.price, latest.confidence, self._rng)
        logger.warning(
            "volatility_fallback_estimate",
            feed=feed_symbol,
            samples=len(samples),
            volatility_bps=bps,
        )
        return VolatilityReading(
            magnitude_bps=bps,
            computed_at=self._clock(),
            feed_symbol=feed_symbol,
            degraded=True,
        )
