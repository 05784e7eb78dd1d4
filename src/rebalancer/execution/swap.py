"""Abstract swap provider interface.

A swap is quote -> precheck -> execute. The saga never retries this
sequence as a unit; a failed precheck stops the token before anything
is sent on-chain.
"""

from abc import ABC, abstractmethod

from rebalancer.models import SwapQuote


class SwapProvider(ABC):
    """Quotes and executes swaps on behalf of the delegated signer."""

    @abstractmethod
    async def get_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in_raw: int,
        recipient: str,
        jwt: str = "",
    ) -> SwapQuote:
        """Return a signed quote for swapping ``amount_in_raw`` of ``token_in``.

        Raises:
            SwapQuoteError: If no quote can be produced.
        """
        ...

    @abstractmethod
    async def precheck(self, quote: SwapQuote, jwt: str = "") -> bool:
        """Validate a quote against current chain state without sending it."""
        ...

    @abstractmethod
    async def execute(self, quote: SwapQuote, jwt: str = "") -> str:
        """Execute a prechecked quote and return the swap transaction hash.

        Raises:
            SwapExecutionError: If the swap is not executed.
        """
        ...

    async def close(self) -> None:
        """Release connections held by the provider."""
