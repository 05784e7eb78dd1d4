"""Shared test fixtures for the vault rebalancer."""

from decimal import Decimal

import pytest

from rebalancer.config import (
    USDC_ADDRESS,
    WETH_ADDRESS,
    AppSettings,
    AutomationSettings,
    ExecutionSettings,
    StateSettings,
    VolatilitySettings,
)
from rebalancer.execution.paper_swap import PaperSwapProvider
from rebalancer.execution.paper_vault import PaperVaultClient
from rebalancer.models import PriceQuote
from rebalancer.saga.retry import RetryPolicy
from rebalancer.saga.saga import TransactionSaga

VAULT = "0x" + "a" * 40
OPERATOR = "0x" + "b" * 40
ROUTER = "0x" + "c" * 40
ONE_WETH = 10**18


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    """Async sleep replacement so retries and settlement delays are instant."""
    return _no_sleep


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (paper mode, no persistence)."""
    return AppSettings(
        log_level="DEBUG",
        execution=ExecutionSettings(mode="paper"),
        automation=AutomationSettings(enabled=True),
        volatility=VolatilitySettings(backfill_on_start=False),
        state=StateSettings(enabled=False),
    )


@pytest.fixture
def prices() -> dict[str, PriceQuote]:
    return {
        "WETH": PriceQuote("WETH", Decimal("3000"), Decimal("1.5"), 1_700_000_000),
        "USDC": PriceQuote("USDC", Decimal("1"), Decimal("0.001"), 1_700_000_000),
    }


@pytest.fixture
def paper_vault() -> PaperVaultClient:
    """Paper ledger with USDC and WETH known and 1 WETH in the vault."""
    vault = PaperVaultClient()
    vault.add_token(USDC_ADDRESS, "USDC", 6)
    vault.add_token(WETH_ADDRESS, "WETH", 18)
    vault.fund_vault(VAULT, WETH_ADDRESS, ONE_WETH)
    return vault


@pytest.fixture
def paper_swap(paper_vault: PaperVaultClient, prices: dict[str, PriceQuote]) -> PaperSwapProvider:
    return PaperSwapProvider(paper_vault, ROUTER, prices.get, slippage_bps=100)


@pytest.fixture
def paper_saga(
    paper_vault: PaperVaultClient, paper_swap: PaperSwapProvider, no_sleep
) -> TransactionSaga:
    return TransactionSaga(
        paper_vault,
        paper_swap,
        RetryPolicy(max_attempts=3, delay_seconds=0, sleep=no_sleep),
        stable_token_address=USDC_ADDRESS,
        router_address=ROUTER,
        settlement_delay_seconds=0,
        sleep=no_sleep,
    )
