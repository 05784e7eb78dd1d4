"""Volatility monitor -- polls oracle prices and keeps a rolling sample window.

Each poll fetches the latest price for every configured feed, appends it to
that feed's window when its publish time is new, recomputes the reading,
and hands it to registered listeners. Listeners drive the
volatility-triggered rebalance path.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

from rebalancer.config import VolatilitySettings
from rebalancer.exceptions import DataUnavailableError
from rebalancer.logging import get_logger
from rebalancer.models import PriceQuote, VolatilityReading, VolatilitySample
from rebalancer.volatility.estimator import VolatilityEstimator
from rebalancer.volatility.price_source import PriceSource

logger = get_logger(__name__)

ReadingListener = Callable[[str, VolatilityReading], Awaitable[None]]


class VolatilityMonitor:
    """Maintains per-feed sample windows and the latest readings.

    Args:
        price_source: Oracle client.
        settings: Feed ids, window size, and polling cadence.
        estimator: Converts a window into a reading.
    """

    def __init__(
        self,
        price_source: PriceSource,
        settings: VolatilitySettings,
        estimator: VolatilityEstimator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._price_source = price_source
        self._settings = settings
        self._estimator = estimator or VolatilityEstimator(clock=clock)
        self._clock = clock
        self._windows: dict[str, deque[VolatilitySample]] = {
            symbol: deque(maxlen=settings.window_size) for symbol in settings.feeds
        }
        self._latest: dict[str, PriceQuote] = {}
        self._readings: dict[str, VolatilityReading] = {}
        self._listeners: list[ReadingListener] = []
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def add_listener(self, listener: ReadingListener) -> None:
        """Register an async callback invoked after every fresh reading."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Backfill the windows (if configured) and begin polling."""
        if self._running:
            logger.warning("volatility_monitor_already_running")
            return
        if self._settings.backfill_on_start:
            await self.backfill()
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "volatility_monitor_started",
            poll_interval=self._settings.poll_interval_seconds,
            feeds=sorted(self._settings.feeds),
        )

    async def stop(self) -> None:
        """Stop polling gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("volatility_monitor_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("volatility_monitor_poll_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.poll_interval_seconds)

    async def poll_once(self) -> dict[str, VolatilityReading]:
        """Fetch latest prices, update windows, and notify listeners.

        Returns:
            Readings recomputed during this poll, keyed by symbol.

        Raises:
            DataUnavailableError: If the price source is unavailable.
        """
        quotes = await self._price_source.get_latest_prices(self._settings.feeds)

        updated: dict[str, VolatilityReading] = {}
        for symbol, quote in quotes.items():
            self._latest[symbol] = quote
            self._append(symbol, quote)
            try:
                reading = self._compute(symbol)
            except DataUnavailableError:
                logger.warning("volatility_reading_unavailable", symbol=symbol)
                continue
            self._readings[symbol] = reading
            updated[symbol] = reading
            logger.debug(
                "volatility_reading",
                symbol=symbol,
                price=str(quote.price),
                volatility_bps=reading.magnitude_bps,
                degraded=reading.degraded,
            )

        for symbol, reading in updated.items():
            await self._notify(symbol, reading)
        return updated

    async def backfill(self) -> int:
        """Seed each window with evenly spaced historical prices.

        Failures for individual timestamps are logged and skipped.

        Returns:
            Number of samples added across all feeds.
        """
        now = int(self._clock())
        spacing = self._settings.backfill_spacing_seconds
        count = self._settings.window_size - 1
        added = 0

        for symbol, feed_id in self._settings.feeds.items():
            for i in range(count, 0, -1):
                publish_time = now - i * spacing
                try:
                    quote = await self._price_source.get_price_at(
                        symbol, feed_id, publish_time
                    )
                except DataUnavailableError:
                    logger.warning(
                        "volatility_backfill_point_failed",
                        symbol=symbol,
                        publish_time=publish_time,
                    )
                    continue
                if self._append(symbol, quote):
                    added += 1

        logger.info("volatility_backfill_complete", samples=added)
        return added

    def _append(self, symbol: str, quote: PriceQuote) -> bool:
        window = self._windows.setdefault(
            symbol, deque(maxlen=self._settings.window_size)
        )
        if window and quote.publish_time <= window[-1].timestamp:
            return False
        window.append(VolatilitySample(price=quote.price, timestamp=quote.publish_time))
        return True

    def _compute(self, symbol: str) -> VolatilityReading:
        return self._estimator.estimate(
            list(self._windows.get(symbol, ())),
            latest=self._latest.get(symbol),
            feed_symbol=symbol,
        )

    async def _notify(self, symbol: str, reading: VolatilityReading) -> None:
        for listener in self._listeners:
            try:
                await listener(symbol, reading)
            except Exception:
                logger.error("volatility_listener_failed", symbol=symbol, exc_info=True)

    def get_reading(self, symbol: str) -> VolatilityReading:
        """Return a fresh reading for a feed.

        Raises:
            DataUnavailableError: If no price was ever observed for the feed.
        """
        if symbol not in self._latest and len(self._windows.get(symbol, ())) < 2:
            raise DataUnavailableError(f"No price data for {symbol}")
        reading = self._compute(symbol)
        self._readings[symbol] = reading
        return reading

    def get_latest_price(self, symbol: str) -> PriceQuote | None:
        return self._latest.get(symbol)

    def get_samples(self, symbol: str) -> list[VolatilitySample]:
        return list(self._windows.get(symbol, ()))

    def get_all_readings(self) -> dict[str, VolatilityReading]:
        """Last computed reading per feed (may be slightly stale)."""
        return dict(self._readings)
