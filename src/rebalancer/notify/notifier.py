"""Post-rebalance notifications.

Notifications are best effort: a failing notifier is logged by the caller
and never turns a successful rebalance into a failure.
"""

from abc import ABC, abstractmethod

import httpx

from rebalancer.logging import get_logger
from rebalancer.models import RebalanceRecord

logger = get_logger(__name__)


class Notifier(ABC):
    """Sends a message after an automated or forced rebalance."""

    @abstractmethod
    async def notify_rebalance(self, vault: str, record: RebalanceRecord) -> None:
        ...

    async def close(self) -> None:
        """Release connections held by the notifier."""


class LogNotifier(Notifier):
    """Writes the rebalance summary to the structured log."""

    async def notify_rebalance(self, vault: str, record: RebalanceRecord) -> None:
        logger.info(
            "rebalance_notification",
            vault=vault,
            intensity=record.intensity.value,
            volatility_bps=record.volatility_bps,
            status=record.status,
            tx_hashes=record.tx_hashes,
        )


class WebhookNotifier(Notifier):
    """POSTs the rebalance record as JSON to a webhook URL.

    Args:
        url: Webhook endpoint.
        timeout: Request timeout in seconds.
        client: Optional pre-built httpx client.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def notify_rebalance(self, vault: str, record: RebalanceRecord) -> None:
        payload = {"event": "rebalance", "vault": vault, **record.to_dict()}
        response = await self._client.post(self._url, json=payload)
        response.raise_for_status()
        logger.debug("webhook_notification_sent", vault=vault, status=response.status_code)
