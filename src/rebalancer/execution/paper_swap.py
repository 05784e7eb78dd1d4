"""Paper swap provider that fills against the paper vault ledger.

Prices come from the latest oracle quotes. Output is the USD value of the
input at that price, less simulated slippage, in stable-asset units.
"""

from collections.abc import Callable
from decimal import Decimal

from rebalancer.exceptions import SwapExecutionError, SwapQuoteError
from rebalancer.execution.paper_vault import PaperVaultClient
from rebalancer.execution.swap import SwapProvider
from rebalancer.logging import get_logger
from rebalancer.models import PriceQuote, SwapQuote, format_units, parse_units

logger = get_logger(__name__)

# Simulated slippage: 0.3%
_SLIPPAGE = Decimal("0.003")


class PaperSwapProvider(SwapProvider):
    """Simulated swaps settled instantly in a PaperVaultClient.

    Args:
        vault: Ledger the swap debits and credits.
        router_address: Spender that must hold the allowance.
        price_lookup: Returns the latest PriceQuote for a token symbol.
        slippage_bps: Maximum accepted slippage when computing amount_out_min.
    """

    def __init__(
        self,
        vault: PaperVaultClient,
        router_address: str,
        price_lookup: Callable[[str], PriceQuote | None],
        slippage_bps: int = 100,
    ) -> None:
        self._vault = vault
        self._router = router_address
        self._price_lookup = price_lookup
        self._slippage_bps = slippage_bps

    async def _amount_out(self, token_in: str, token_out: str, amount_in_raw: int) -> int:
        symbol_in, decimals_in = await self._vault.token_info(token_in)
        symbol_out, decimals_out = await self._vault.token_info(token_out)
        price_in = self._price_lookup(symbol_in)
        price_out = self._price_lookup(symbol_out)
        if price_in is None or price_in.price <= 0:
            raise SwapQuoteError(f"No price for {symbol_in}")
        out_price = price_out.price if price_out is not None else Decimal("1")
        if out_price <= 0:
            raise SwapQuoteError(f"No price for {symbol_out}")

        value = format_units(amount_in_raw, decimals_in) * price_in.price / out_price
        return parse_units(value * (1 - _SLIPPAGE), decimals_out)

    async def get_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in_raw: int,
        recipient: str,
        jwt: str = "",
    ) -> SwapQuote:
        try:
            expected = await self._amount_out(token_in, token_out, amount_in_raw)
        except ValueError as e:
            raise SwapQuoteError(str(e)) from e
        amount_out_min = expected * (10_000 - self._slippage_bps) // 10_000
        return SwapQuote(
            token_in=token_in,
            token_out=token_out,
            amount_in_raw=amount_in_raw,
            amount_out_min_raw=amount_out_min,
            recipient=recipient,
            payload={"expectedOut": str(expected)},
        )

    async def precheck(self, quote: SwapQuote, jwt: str = "") -> bool:
        held = await self._vault.balance_of(quote.token_in, quote.recipient)
        allowed = await self._vault.allowance(quote.token_in, quote.recipient, self._router)
        ok = held >= quote.amount_in_raw and allowed >= quote.amount_in_raw
        if not ok:
            logger.warning(
                "paper_swap_precheck_failed",
                held=held,
                allowed=allowed,
                amount_in=quote.amount_in_raw,
            )
        return ok

    async def execute(self, quote: SwapQuote, jwt: str = "") -> str:
        amount_out = int(quote.payload.get("expectedOut", quote.amount_out_min_raw))
        try:
            self._vault.spend_allowance(
                quote.token_in, quote.recipient, self._router, quote.amount_in_raw
            )
            self._vault.debit_wallet(quote.recipient, quote.token_in, quote.amount_in_raw)
        except ValueError as e:
            raise SwapExecutionError(str(e)) from e
        self._vault.credit_wallet(quote.recipient, quote.token_out, amount_out)
        tx_hash = self._vault.record_tx("swap")
        logger.info(
            "paper_swap_filled",
            amount_in=quote.amount_in_raw,
            amount_out=amount_out,
            tx_hash=tx_hash,
        )
        return tx_hash
