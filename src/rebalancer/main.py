"""Entry point for the vault rebalancer.

Wires all components together, optionally embeds the FastAPI API, and
starts the automation runner. When the API is enabled (default), the runner
and the API share a single asyncio event loop via uvicorn's programmatic
API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. PriceSource + VolatilityMonitor
2. VaultClient + SwapProvider (paper or live based on mode)
3. RetryPolicy + TransactionSaga
4. RebalancePlanner
5. Notifier
6. StateDatabase + AutomationStateStore (if persistence enabled)
7. AutomationRunner with a per-vault engine factory
"""

import asyncio
import signal
import time
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from rebalancer.automation.engine import RebalanceDecisionEngine
from rebalancer.automation.state import AutomationState
from rebalancer.config import AppSettings, WETH_ADDRESS
from rebalancer.data.database import StateDatabase
from rebalancer.data.store import AutomationStateStore
from rebalancer.execution.swap import SwapProvider
from rebalancer.execution.vault import VaultClient
from rebalancer.logging import get_logger, setup_logging
from rebalancer.models import VaultContext
from rebalancer.notify.notifier import LogNotifier, Notifier, WebhookNotifier
from rebalancer.orchestrator import AutomationRunner
from rebalancer.planning.planner import RebalancePlanner
from rebalancer.saga.retry import RetryPolicy
from rebalancer.saga.saga import TransactionSaga
from rebalancer.volatility.monitor import VolatilityMonitor
from rebalancer.volatility.price_source import PythPriceSource

# Stand-in addresses so paper mode runs with no vault configured
_PAPER_VAULT = "0x000000000000000000000000000000000000dEaD"
_PAPER_OPERATOR = "0x0000000000000000000000000000000000000001"


def _build_execution(
    settings: AppSettings, monitor: VolatilityMonitor
) -> tuple[VaultClient, SwapProvider, str]:
    """Create vault client and swap provider for the configured mode.

    Returns:
        (vault_client, swap_provider, operator_address)
    """
    if settings.execution.mode == "paper":
        from rebalancer.execution.paper_swap import PaperSwapProvider
        from rebalancer.execution.paper_vault import PaperVaultClient

        vault_address = settings.vault.address or _PAPER_VAULT
        paper_vault = PaperVaultClient()
        paper_vault.add_token(
            settings.chain.stable_token_address,
            settings.chain.stable_token_symbol,
            settings.chain.stable_token_decimals,
        )
        paper_vault.add_token(WETH_ADDRESS, "WETH", 18)
        for token, amount in settings.execution.paper_initial_balances.items():
            paper_vault.fund_vault(vault_address, token, amount)

        swap_provider: SwapProvider = PaperSwapProvider(
            paper_vault,
            settings.chain.router_address,
            monitor.get_latest_price,
            slippage_bps=settings.saga.slippage_bps,
        )
        operator = settings.vault.operator_address or _PAPER_OPERATOR
        return paper_vault, swap_provider, operator

    from rebalancer.execution.live_swap import DelegatedSwapProvider
    from rebalancer.execution.live_vault import Web3VaultClient

    live_vault = Web3VaultClient(settings.chain)
    swap_provider = DelegatedSwapProvider(
        settings.swap, settings.chain, slippage_bps=settings.saga.slippage_bps
    )
    operator = settings.vault.operator_address or live_vault.operator_address
    return live_vault, swap_provider, operator


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Does NOT start anything or open the state database; that happens in the
    lifespan (API mode) or run() (headless mode).
    """
    logger = get_logger("rebalancer.main")

    price_source = PythPriceSource(
        settings.volatility.hermes_url,
        timeout=settings.volatility.request_timeout_seconds,
    )
    monitor = VolatilityMonitor(price_source, settings.volatility)

    vault_client, swap_provider, operator = _build_execution(settings, monitor)

    retry_policy = RetryPolicy.from_settings(settings.saga)
    saga = TransactionSaga(
        vault_client,
        swap_provider,
        retry_policy,
        stable_token_address=settings.chain.stable_token_address,
        router_address=settings.chain.router_address,
        settlement_delay_seconds=settings.saga.settlement_delay_seconds,
    )
    planner = RebalancePlanner(
        settings.chain.stable_token_address,
        settings.chain.stable_token_symbol,
        min_swap_amount=settings.saga.min_swap_amount,
    )

    notifier: Notifier
    if settings.notifier.webhook_url:
        notifier = WebhookNotifier(
            settings.notifier.webhook_url, timeout=settings.notifier.timeout_seconds
        )
    else:
        notifier = LogNotifier()

    database = StateDatabase(settings.state.db_path) if settings.state.enabled else None
    store = AutomationStateStore(database) if database is not None else None

    def engine_factory(context: VaultContext) -> RebalanceDecisionEngine:
        state = AutomationState.from_settings(
            settings.automation,
            now_ms=int(time.time() * 1000),
            history_limit=settings.state.history_limit,
        )
        return RebalanceDecisionEngine(
            context=context,
            state=state,
            planner=planner,
            saga=saga,
            vault_client=vault_client,
            tracked_tokens=settings.chain.tracked_tokens,
            notifier=notifier,
            store=store,
            saga_timeout_seconds=settings.saga.timeout_seconds,
        )

    vault_address = settings.vault.address
    if not vault_address and settings.execution.mode == "paper":
        vault_address = _PAPER_VAULT
    primary = VaultContext(
        address=vault_address,
        operator_address=operator,
        jwt=settings.vault.jwt.get_secret_value(),
    )

    runner = AutomationRunner(settings, monitor, primary, engine_factory)

    logger.info(
        "components_built",
        mode=settings.execution.mode,
        primary_vault=primary.address,
        operator=operator,
        persistence=settings.state.enabled,
    )

    return {
        "price_source": price_source,
        "monitor": monitor,
        "vault_client": vault_client,
        "swap_provider": swap_provider,
        "notifier": notifier,
        "database": database,
        "runner": runner,
    }


def _setup_signal_handlers(runner: AutomationRunner) -> None:
    """Register SIGINT/SIGTERM for graceful stop.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("rebalancer.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(runner.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _close_components(components: dict[str, Any]) -> None:
    """Release clients and the database in reverse order of creation."""
    if components["database"] is not None:
        await components["database"].close()
    await components["notifier"].close()
    await components["swap_provider"].close()
    await components["vault_client"].close()
    await components["price_source"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application.

    On startup: opens the state database, stores the runner on app.state,
    and starts the runner as a background task.

    On shutdown: stops the runner, cancels its task, closes clients.
    """
    logger = get_logger("rebalancer.main")
    settings = app.state.settings
    components = app.state.components
    runner: AutomationRunner = components["runner"]

    app.state.runner = runner

    if components["database"] is not None:
        await components["database"].connect()

    _setup_signal_handlers(runner)

    runner_task = asyncio.create_task(runner.start())
    logger.info("lifespan_started", mode=settings.execution.mode)

    yield

    await runner.stop()
    runner_task.cancel()
    try:
        await runner_task
    except asyncio.CancelledError:
        pass

    await _close_components(components)
    logger.info("vault_rebalancer_stopped")


async def run() -> None:
    """Run the vault rebalancer.

    When the API is enabled (API_ENABLED=true, the default) the runner lives
    inside the FastAPI lifespan under uvicorn. Otherwise the runner is
    started directly and signal handlers are installed here.
    """
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("rebalancer.main")

    components = await _build_components(settings)

    if settings.api.enabled:
        from rebalancer.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            mode=settings.execution.mode,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        runner: AutomationRunner = components["runner"]
        _setup_signal_handlers(runner)

        logger.info("starting_without_api", mode=settings.execution.mode)

        try:
            if components["database"] is not None:
                await components["database"].connect()
            await runner.start()
        finally:
            await _close_components(components)
            logger.info("vault_rebalancer_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
