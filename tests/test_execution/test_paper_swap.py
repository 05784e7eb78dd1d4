"""Tests for PaperSwapProvider pricing and settlement."""

from decimal import Decimal

import pytest

from rebalancer.config import USDC_ADDRESS, WETH_ADDRESS
from rebalancer.exceptions import SwapExecutionError, SwapQuoteError
from rebalancer.execution.paper_swap import PaperSwapProvider
from rebalancer.execution.paper_vault import PaperVaultClient

OPERATOR = "0x" + "b" * 40
ROUTER = "0x" + "c" * 40


@pytest.mark.asyncio
async def test_quote_prices_from_oracle(paper_swap: PaperSwapProvider) -> None:
    """1 WETH at 3000 less 0.3% is 2991 USDC; min out allows 1% more."""
    quote = await paper_swap.get_quote(WETH_ADDRESS, USDC_ADDRESS, 10**18, OPERATOR)

    assert quote.payload["expectedOut"] == "2991000000"
    assert quote.amount_out_min_raw == 2_961_090_000
    assert quote.recipient == OPERATOR


@pytest.mark.asyncio
async def test_quote_without_price_fails(paper_vault: PaperVaultClient) -> None:
    provider = PaperSwapProvider(paper_vault, ROUTER, lambda symbol: None)
    with pytest.raises(SwapQuoteError):
        await provider.get_quote(WETH_ADDRESS, USDC_ADDRESS, 10**18, OPERATOR)


@pytest.mark.asyncio
async def test_precheck_requires_funds_and_allowance(
    paper_swap: PaperSwapProvider, paper_vault: PaperVaultClient
) -> None:
    quote = await paper_swap.get_quote(WETH_ADDRESS, USDC_ADDRESS, 10**17, OPERATOR)
    assert await paper_swap.precheck(quote) is False

    paper_vault.credit_wallet(OPERATOR, WETH_ADDRESS, 10**17)
    assert await paper_swap.precheck(quote) is False

    await paper_vault.approve(WETH_ADDRESS, ROUTER, 10**17, sender=OPERATOR)
    assert await paper_swap.precheck(quote) is True


@pytest.mark.asyncio
async def test_execute_settles_in_ledger(
    paper_swap: PaperSwapProvider, paper_vault: PaperVaultClient
) -> None:
    paper_vault.credit_wallet(OPERATOR, WETH_ADDRESS, 10**17)
    await paper_vault.approve(WETH_ADDRESS, ROUTER, 10**17, sender=OPERATOR)
    quote = await paper_swap.get_quote(WETH_ADDRESS, USDC_ADDRESS, 10**17, OPERATOR)

    tx_hash = await paper_swap.execute(quote)

    assert paper_vault.transactions[-1] == ("swap", tx_hash)
    assert await paper_vault.balance_of(WETH_ADDRESS, OPERATOR) == 0
    received = await paper_vault.balance_of(USDC_ADDRESS, OPERATOR)
    assert Decimal(received) / Decimal(10**6) == Decimal("299.1")


@pytest.mark.asyncio
async def test_execute_without_allowance_fails(
    paper_swap: PaperSwapProvider, paper_vault: PaperVaultClient
) -> None:
    paper_vault.credit_wallet(OPERATOR, WETH_ADDRESS, 10**17)
    quote = await paper_swap.get_quote(WETH_ADDRESS, USDC_ADDRESS, 10**17, OPERATOR)

    with pytest.raises(SwapExecutionError):
        await paper_swap.execute(quote)
    assert await paper_vault.balance_of(WETH_ADDRESS, OPERATOR) == 10**17
