"""Paper vault client with an in-memory ledger.

Mirrors the vault contract and ERC20 semantics closely enough to run the
full saga without a chain: withdrawals require a sufficient vault balance,
deposits require a sufficient allowance, and every state change returns a
fresh 32-byte hex hash.
"""

from collections.abc import Sequence
from uuid import uuid4

from rebalancer.execution.vault import VaultClient
from rebalancer.logging import get_logger

logger = get_logger(__name__)


def _fake_tx_hash() -> str:
    return "0x" + uuid4().hex + uuid4().hex


def _key(*parts: str) -> tuple[str, ...]:
    return tuple(p.lower() for p in parts)


class PaperVaultClient(VaultClient):
    """In-memory vault and token ledger for paper mode and tests."""

    def __init__(self) -> None:
        self._tokens: dict[str, tuple[str, int]] = {}
        self._vault_balances: dict[tuple[str, ...], int] = {}
        self._wallet_balances: dict[tuple[str, ...], int] = {}
        self._allowances: dict[tuple[str, ...], int] = {}
        self._supported: dict[str, set[str]] = {}
        self.transactions: list[tuple[str, str]] = []  # (action, hash)

    # ──────────────────────────────────────────────
    # Ledger setup
    # ──────────────────────────────────────────────

    def add_token(self, address: str, symbol: str, decimals: int) -> None:
        self._tokens[address.lower()] = (symbol, decimals)

    def fund_vault(self, vault: str, token: str, amount: int, register: bool = True) -> None:
        key = _key(vault, token)
        self._vault_balances[key] = self._vault_balances.get(key, 0) + amount
        if register:
            self._supported.setdefault(vault.lower(), set()).add(token.lower())

    def credit_wallet(self, owner: str, token: str, amount: int) -> None:
        key = _key(owner, token)
        self._wallet_balances[key] = self._wallet_balances.get(key, 0) + amount

    def debit_wallet(self, owner: str, token: str, amount: int) -> None:
        key = _key(owner, token)
        held = self._wallet_balances.get(key, 0)
        if held < amount:
            raise ValueError(f"Insufficient wallet balance: {held} < {amount}")
        self._wallet_balances[key] = held - amount

    def spend_allowance(self, token: str, owner: str, spender: str, amount: int) -> None:
        key = _key(token, owner, spender)
        allowed = self._allowances.get(key, 0)
        if allowed < amount:
            raise ValueError(f"Insufficient allowance: {allowed} < {amount}")
        self._allowances[key] = allowed - amount

    def record_tx(self, action: str) -> str:
        tx_hash = _fake_tx_hash()
        self.transactions.append((action, tx_hash))
        logger.info("paper_tx", action=action, tx_hash=tx_hash)
        return tx_hash

    # ──────────────────────────────────────────────
    # Vault contract
    # ──────────────────────────────────────────────

    async def get_balance(self, vault: str, token: str) -> int:
        return self._vault_balances.get(_key(vault, token), 0)

    async def withdraw_to(
        self, vault: str, token: str, amount: int, recipient: str, sender: str
    ) -> str:
        key = _key(vault, token)
        held = self._vault_balances.get(key, 0)
        if held < amount:
            raise ValueError(f"Vault balance too low: {held} < {amount}")
        self._vault_balances[key] = held - amount
        self.credit_wallet(recipient, token, amount)
        return self.record_tx("withdraw")

    async def register_existing_tokens(
        self, vault: str, tokens: Sequence[str], sender: str
    ) -> str:
        self._supported.setdefault(vault.lower(), set()).update(t.lower() for t in tokens)
        return self.record_tx("register")

    async def deposit(self, vault: str, token: str, amount: int, sender: str) -> str:
        self.spend_allowance(token, sender, vault, amount)
        self.debit_wallet(sender, token, amount)
        self.fund_vault(vault, token, amount)
        return self.record_tx("deposit")

    async def sync_token_balance(self, vault: str, token: str, sender: str) -> str:
        return self.record_tx("sync")

    async def get_supported_tokens(self, vault: str) -> list[str]:
        return sorted(self._supported.get(vault.lower(), set()))

    # ──────────────────────────────────────────────
    # ERC20
    # ──────────────────────────────────────────────

    async def approve(self, token: str, spender: str, amount: int, sender: str) -> str:
        self._allowances[_key(token, sender, spender)] = amount
        return self.record_tx("approve")

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances.get(_key(token, owner, spender), 0)

    async def balance_of(self, token: str, owner: str) -> int:
        return self._wallet_balances.get(_key(owner, token), 0)

    async def token_info(self, token: str) -> tuple[str, int]:
        try:
            return self._tokens[token.lower()]
        except KeyError:
            raise ValueError(f"Unknown token {token}") from None
