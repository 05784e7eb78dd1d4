"""Price sources feeding the volatility monitor.

PythPriceSource reads parsed price updates from the Pyth Hermes REST API.
Hermes returns integer price and confidence with a base-10 exponent;
both are converted to Decimal as ``value * 10**expo``.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

import httpx

from rebalancer.exceptions import DataUnavailableError
from rebalancer.logging import get_logger
from rebalancer.models import PriceQuote

logger = get_logger(__name__)


class PriceSource(ABC):
    """Latest and historical oracle prices, keyed by symbol."""

    @abstractmethod
    async def get_latest_prices(self, feeds: dict[str, str]) -> dict[str, PriceQuote]:
        """Fetch the latest price for each ``symbol -> feed_id`` entry.

        Raises:
            DataUnavailableError: If the source cannot be reached or parsed.
        """
        ...

    @abstractmethod
    async def get_price_at(
        self, symbol: str, feed_id: str, publish_time: int
    ) -> PriceQuote:
        """Fetch the price published at (or just after) a Unix timestamp."""
        ...

    async def close(self) -> None:
        """Release any underlying connections."""


def _normalize_feed_id(feed_id: str) -> str:
    return feed_id.lower().removeprefix("0x")


def parse_hermes_price(symbol: str, item: dict) -> PriceQuote:
    """Convert one entry of a Hermes ``parsed`` array into a PriceQuote."""
    price_data = item["price"]
    expo = int(price_data["expo"])
    return PriceQuote(
        symbol=symbol,
        price=Decimal(str(price_data["price"])).scaleb(expo),
        confidence=Decimal(str(price_data["conf"])).scaleb(expo),
        publish_time=int(price_data["publish_time"]),
    )


class PythPriceSource(PriceSource):
    """Async client for the Pyth Hermes price service.

    Args:
        base_url: Hermes endpoint, e.g. https://hermes.pyth.network.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built httpx client (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: str = "https://hermes.pyth.network",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch(self, path: str, feed_ids: list[str]) -> list[dict]:
        params = [("ids[]", fid) for fid in feed_ids]
        params.append(("parsed", "true"))
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DataUnavailableError(f"Hermes request failed: {e}") from e

        parsed = data.get("parsed") if isinstance(data, dict) else None
        if not parsed:
            raise DataUnavailableError("Hermes response has no parsed prices")
        return parsed

    async def get_latest_prices(self, feeds: dict[str, str]) -> dict[str, PriceQuote]:
        if not feeds:
            return {}

        parsed = await self._fetch("/v2/updates/price/latest", list(feeds.values()))
        by_id = {_normalize_feed_id(fid): symbol for symbol, fid in feeds.items()}

        quotes: dict[str, PriceQuote] = {}
        for item in parsed:
            symbol = by_id.get(_normalize_feed_id(str(item.get("id", ""))))
            if symbol is None:
                continue
            try:
                quotes[symbol] = parse_hermes_price(symbol, item)
            except (KeyError, TypeError, ValueError, ArithmeticError):
                logger.warning("hermes_price_parse_failed", symbol=symbol, exc_info=True)

        if not quotes:
            raise DataUnavailableError("No requested feeds in Hermes response")

        logger.debug("hermes_prices_fetched", symbols=sorted(quotes))
        return quotes

    async def get_price_at(
        self, symbol: str, feed_id: str, publish_time: int
    ) -> PriceQuote:
        parsed = await self._fetch(f"/v2/updates/price/{publish_time}", [feed_id])
        try:
            return parse_hermes_price(symbol, parsed[0])
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise DataUnavailableError(f"Malformed Hermes price for {symbol}") from e
