"""Abstract vault client interface.

Defines the contract calls the saga depends on. Both PaperVaultClient and
Web3VaultClient implement this ABC so the saga is identical in paper and
live mode. State-changing calls return the confirmed transaction hash and
take the ``sender`` that must sign them.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from rebalancer.models import TokenBalance


class VaultClient(ABC):
    """Vault contract plus the ERC20 calls used around it.

    The concrete client (paper or live) is injected at startup based on
    ExecutionSettings.mode.
    """

    # Vault contract

    @abstractmethod
    async def get_balance(self, vault: str, token: str) -> int:
        """Authoritative vault balance for a token, raw units."""
        ...

    @abstractmethod
    async def withdraw_to(
        self, vault: str, token: str, amount: int, recipient: str, sender: str
    ) -> str:
        """Move ``amount`` of ``token`` out of the vault to ``recipient``."""
        ...

    @abstractmethod
    async def register_existing_tokens(
        self, vault: str, tokens: Sequence[str], sender: str
    ) -> str:
        """Make the vault aware of tokens it already holds."""
        ...

    @abstractmethod
    async def deposit(self, vault: str, token: str, amount: int, sender: str) -> str:
        """Deposit ``amount`` of ``token`` from ``sender`` into the vault."""
        ...

    @abstractmethod
    async def sync_token_balance(self, vault: str, token: str, sender: str) -> str:
        """Reconcile the vault's internal accounting with its token balance."""
        ...

    @abstractmethod
    async def get_supported_tokens(self, vault: str) -> list[str]:
        """Tokens the vault contract currently tracks."""
        ...

    # ERC20

    @abstractmethod
    async def approve(self, token: str, spender: str, amount: int, sender: str) -> str:
        ...

    @abstractmethod
    async def allowance(self, token: str, owner: str, spender: str) -> int:
        ...

    @abstractmethod
    async def balance_of(self, token: str, owner: str) -> int:
        ...

    @abstractmethod
    async def token_info(self, token: str) -> tuple[str, int]:
        """Return ``(symbol, decimals)`` for a token."""
        ...

    async def close(self) -> None:
        """Release connections held by the client."""

    async def get_token_balances(
        self, vault: str, tokens: Sequence[str]
    ) -> list[TokenBalance]:
        """Snapshot vault balances for the given tokens, in order."""
        balances: list[TokenBalance] = []
        for token in tokens:
            symbol, decimals = await self.token_info(token)
            raw = await self.get_balance(vault, token)
            balances.append(
                TokenBalance(
                    token_address=token,
                    symbol=symbol,
                    raw_balance=raw,
                    decimals=decimals,
                )
            )
        return balances
