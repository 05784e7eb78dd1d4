"""Rebalance transaction saga -- executes a plan token by token.

Each token runs a fixed sequence of sub-steps:

  1. SYNC:      syncTokenBalance (best effort, single attempt)
  2. REGISTER:  registerExistingTokens if the vault does not track it (best effort)
  3. VERIFY:    authoritative getBalance; abort token if below plan amount
  4. WITHDRAW:  withdrawTo the operator address (retried)
  5. APPROVE:   router allowance, approved only if insufficient (retried)
  6. SWAP:      quote -> precheck -> execute (never retried)
  7. RETURN:    after settlement, approve + deposit the stable proceeds (retried)

Tokens run strictly in plan order. A failure aborts only the current token;
its error is recorded and the next token proceeds. Every confirmed hash is
appended to the shared SagaResult immediately, so partial progress survives
later failures, timeouts and cancellation. There is no compensation: a
withdraw whose swap fails leaves the funds on the operator address, and the
per-token record says exactly how far it got.
"""

import asyncio
from collections.abc import Awaitable, Callable

from rebalancer.exceptions import InsufficientBalanceError, SwapPrecheckError
from rebalancer.execution.swap import SwapProvider
from rebalancer.execution.vault import VaultClient
from rebalancer.logging import get_logger
from rebalancer.models import (
    RebalancePlan,
    SagaResult,
    SagaStage,
    TokenRebalanceStep,
    TokenStepRecord,
    VaultContext,
)
from rebalancer.saga.retry import RetryPolicy

logger = get_logger(__name__)

NO_TOKENS_ERROR = "No tokens to rebalance"
ALL_FAILED_ERROR = "All rebalancing steps failed"


class TransactionSaga:
    """Best-effort, ordered execution of a RebalancePlan against one vault.

    Args:
        vault_client: Vault contract and ERC20 calls.
        swap_provider: Quote/precheck/execute capability.
        retry_policy: Applied to withdraw, approve, and deposit.
        stable_token_address: Asset the swaps produce.
        router_address: Spender approved for the swap.
        settlement_delay_seconds: Wait before reading swap proceeds.
        sleep: Async sleep used for the settlement delay.
    """

    def __init__(
        self,
        vault_client: VaultClient,
        swap_provider: SwapProvider,
        retry_policy: RetryPolicy,
        stable_token_address: str,
        router_address: str,
        settlement_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._vault = vault_client
        self._swap = swap_provider
        self._retry = retry_policy
        self._stable = stable_token_address
        self._router = router_address
        self._settlement_delay = settlement_delay_seconds
        self._sleep = sleep

    async def execute(
        self,
        plan: RebalancePlan,
        context: VaultContext,
        result: SagaResult | None = None,
    ) -> SagaResult:
        """Run every step of the plan and return the accumulated result.

        Pass ``result`` to observe progress from outside, e.g. to keep the
        recorded hashes when a caller-level timeout cancels the run.
        """
        result = result if result is not None else SagaResult()

        if not plan.steps:
            result.errors.append(NO_TOKENS_ERROR)
            logger.warning("saga_empty_plan", vault=context.address)
            return result

        logger.info(
            "saga_started",
            vault=context.address,
            intensity=plan.intensity.value,
            tokens=[s.symbol for s in plan.steps],
        )

        for step in plan.steps:
            record = TokenStepRecord(
                token_address=step.token_address,
                symbol=step.symbol,
                amount_raw=step.amount_to_swap_raw,
            )
            result.token_records.append(record)
            try:
                await self._process_token(step, context, result, record)
            except Exception as e:
                message = f"Failed to process {step.symbol}: {e}"
                record.error = str(e)
                result.errors.append(message)
                logger.error(
                    "saga_token_failed",
                    symbol=step.symbol,
                    stage=record.stage.value,
                    error=str(e),
                )

        result.success = len(result.completed_tx_hashes) > 0
        if not result.success:
            result.errors.append(ALL_FAILED_ERROR)

        logger.info(
            "saga_finished",
            vault=context.address,
            success=result.success,
            tx_count=len(result.completed_tx_hashes),
            errors=len(result.errors),
        )
        return result

    def _record_hash(
        self,
        result: SagaResult,
        record: TokenStepRecord,
        action: str,
        tx_hash: str,
    ) -> None:
        result.completed_tx_hashes.append(tx_hash)
        record.tx_hashes[action] = tx_hash
        logger.info("saga_tx_recorded", symbol=record.symbol, action=action, tx_hash=tx_hash)

    async def _process_token(
        self,
        step: TokenRebalanceStep,
        context: VaultContext,
        result: SagaResult,
        record: TokenStepRecord,
    ) -> None:
        vault = context.address
        operator = context.operator_address
        token = step.token_address
        amount = step.amount_to_swap_raw

        # 1. Sync -- staleness tolerated, the balance check below is authoritative
        try:
            tx_hash = await self._vault.sync_token_balance(vault, token, sender=operator)
            self._record_hash(result, record, "sync", tx_hash)
            record.stage = SagaStage.SYNCED
        except Exception as e:
            logger.warning("saga_sync_failed", symbol=step.symbol, error=str(e))

        # 2. Registration
        try:
            supported = {t.lower() for t in await self._vault.get_supported_tokens(vault)}
            if token.lower() not in supported:
                tx_hash = await self._vault.register_existing_tokens(
                    vault, [token], sender=operator
                )
                self._record_hash(result, record, "register", tx_hash)
            record.stage = SagaStage.REGISTERED
        except Exception as e:
            logger.warning("saga_registration_failed", symbol=step.symbol, error=str(e))

        # 3. Authoritative balance
        balance = await self._vault.get_balance(vault, token)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Insufficient vault balance: have {balance}, need {amount}"
            )
        record.stage = SagaStage.VERIFIED

        # 4. Withdraw to the operator
        tx_hash = await self._retry.run(
            f"withdraw {step.symbol}",
            lambda: self._vault.withdraw_to(vault, token, amount, operator, sender=operator),
        )
        self._record_hash(result, record, "withdraw", tx_hash)
        record.stage = SagaStage.WITHDRAWN

        # 5. Router allowance
        current_allowance = await self._vault.allowance(token, operator, self._router)
        if current_allowance < amount:
            tx_hash = await self._retry.run(
                f"approve {step.symbol}",
                lambda: self._vault.approve(token, self._router, amount, sender=operator),
            )
            self._record_hash(result, record, "approve", tx_hash)
        record.stage = SagaStage.APPROVED

        # 6. Swap
        quote = await self._swap.get_quote(
            token, self._stable, amount, operator, jwt=context.jwt
        )
        if not await self._swap.precheck(quote, jwt=context.jwt):
            raise SwapPrecheckError("Swap precheck failed")
        tx_hash = await self._swap.execute(quote, jwt=context.jwt)
        self._record_hash(result, record, "swap", tx_hash)
        record.stage = SagaStage.SWAPPED

        # 7. Return stable proceeds to the vault
        await self._sleep(self._settlement_delay)
        proceeds = await self._vault.balance_of(self._stable, operator)
        if proceeds > 0:
            tx_hash = await self._retry.run(
                "approve stable deposit",
                lambda: self._vault.approve(self._stable, vault, proceeds, sender=operator),
            )
            self._record_hash(result, record, "deposit_approve", tx_hash)
            tx_hash = await self._retry.run(
                "deposit stable",
                lambda: self._vault.deposit(vault, self._stable, proceeds, sender=operator),
            )
            self._record_hash(result, record, "deposit", tx_hash)
        else:
            logger.warning("saga_no_stable_proceeds", symbol=step.symbol)
        record.stage = SagaStage.COMPLETED
