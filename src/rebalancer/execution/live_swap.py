"""Delegated swap provider backed by the signing service's HTTP API.

The service holds the delegated signer and exposes three JSON endpoints:
``POST /quote`` returns a signed quote, ``POST /precheck`` validates it
against chain state, and ``POST /execute`` submits it and returns
``{"swapTxHash": ...}``. The caller's JWT authorizes each request.
"""

import httpx

from rebalancer.config import ChainSettings, SwapSettings
from rebalancer.exceptions import SwapExecutionError, SwapPrecheckError, SwapQuoteError
from rebalancer.execution.swap import SwapProvider
from rebalancer.logging import get_logger
from rebalancer.models import SwapQuote

logger = get_logger(__name__)


class DelegatedSwapProvider(SwapProvider):
    """SwapProvider calling the delegated signing service.

    Args:
        settings: Service URL, fallback auth token, and timeout.
        chain: Chain id and RPC url forwarded with each quote request.
        slippage_bps: Slippage tolerance forwarded with each quote request.
        client: Optional pre-built httpx client (tests inject a MockTransport).
    """

    def __init__(
        self,
        settings: SwapSettings,
        chain: ChainSettings,
        slippage_bps: int = 100,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._chain = chain
        self._slippage_bps = slippage_bps
        self._client = client or httpx.AsyncClient(
            base_url=settings.service_url, timeout=settings.timeout_seconds
        )
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, jwt: str) -> dict[str, str]:
        token = jwt or self._settings.auth_token.get_secret_value()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _post(self, path: str, body: dict, jwt: str) -> dict:
        response = await self._client.post(path, json=body, headers=self._headers(jwt))
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response from {path}")
        return data

    async def get_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in_raw: int,
        recipient: str,
        jwt: str = "",
    ) -> SwapQuote:
        body = {
            "tokenIn": token_in,
            "tokenOut": token_out,
            "amountIn": str(amount_in_raw),
            "recipient": recipient,
            "slippageBps": self._slippage_bps,
            "chainId": self._chain.chain_id,
            "rpcUrl": self._chain.rpc_url,
        }
        try:
            data = await self._post("/quote", body, jwt)
            quote = data["quote"]
            amount_out_min = int(quote.get("amountOutMin", 0))
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise SwapQuoteError(f"Quote request failed: {e}") from e

        logger.info(
            "swap_quote_received",
            token_in=token_in,
            amount_in=amount_in_raw,
            amount_out_min=amount_out_min,
        )
        return SwapQuote(
            token_in=token_in,
            token_out=token_out,
            amount_in_raw=amount_in_raw,
            amount_out_min_raw=amount_out_min,
            recipient=recipient,
            payload=quote,
        )

    async def precheck(self, quote: SwapQuote, jwt: str = "") -> bool:
        try:
            data = await self._post("/precheck", {"quote": quote.payload}, jwt)
        except (httpx.HTTPError, ValueError) as e:
            raise SwapPrecheckError(f"Precheck request failed: {e}") from e
        ok = bool(data.get("success"))
        if not ok:
            logger.warning("swap_precheck_rejected", reason=data.get("error"))
        return ok

    async def execute(self, quote: SwapQuote, jwt: str = "") -> str:
        try:
            data = await self._post("/execute", {"quote": quote.payload}, jwt)
            tx_hash = str(data["swapTxHash"])
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise SwapExecutionError(f"Swap execution failed: {e}") from e
        logger.info("swap_executed", tx_hash=tx_hash)
        return tx_hash
