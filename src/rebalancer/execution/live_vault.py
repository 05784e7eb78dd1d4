"""Live vault client using web3.py.

Signs every state-changing call with the operator key, submits it, and
waits for the receipt before returning. A receipt with status 0 raises
TransactionRevertedError so the retry policy treats it as a failed attempt.
"""

import asyncio
from collections.abc import Sequence

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from rebalancer.config import ChainSettings
from rebalancer.exceptions import RebalancerError, TransactionRevertedError
from rebalancer.execution.vault import VaultClient
from rebalancer.logging import get_logger

logger = get_logger(__name__)

VAULT_ABI = [
    {
        "name": "getBalance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "withdrawTo",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "to", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "name": "registerExistingTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "tokens", "type": "address[]"}],
        "outputs": [],
    },
    {
        "name": "deposit",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "syncTokenBalance",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [],
    },
    {
        "name": "getAllSupportedTokens",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address[]"}],
    },
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "symbol",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


class Web3VaultClient(VaultClient):
    """Vault client backed by an RPC node and a local operator key.

    Args:
        settings: RPC url, chain id, operator key, and receipt timeout.
        w3: Optional pre-built AsyncWeb3 instance.
    """

    def __init__(self, settings: ChainSettings, w3: AsyncWeb3 | None = None) -> None:
        self._settings = settings
        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(settings.rpc_url))
        key = settings.operator_private_key.get_secret_value()
        if not key:
            raise RebalancerError("CHAIN_OPERATOR_PRIVATE_KEY is required in live mode")
        self._account = Account.from_key(key)
        self._nonce_lock = asyncio.Lock()
        self._token_info: dict[str, tuple[str, int]] = {}

    @property
    def operator_address(self) -> str:
        return self._account.address

    async def close(self) -> None:
        await self._w3.provider.disconnect()

    def _vault(self, vault: str):  # type: ignore[no-untyped-def]
        return self._w3.eth.contract(address=_checksum(vault), abi=VAULT_ABI)

    def _erc20(self, token: str):  # type: ignore[no-untyped-def]
        return self._w3.eth.contract(address=_checksum(token), abi=ERC20_ABI)

    async def _send(self, call, sender: str, action: str) -> str:  # type: ignore[no-untyped-def]
        """Sign, submit, and confirm a contract call. Returns the tx hash."""
        if sender.lower() != self._account.address.lower():
            raise RebalancerError(f"No signing key for sender {sender}")

        async with self._nonce_lock:
            nonce = await self._w3.eth.get_transaction_count(
                self._account.address, "pending"
            )
            tx = await call.build_transaction(
                {
                    "from": self._account.address,
                    "nonce": nonce,
                    "chainId": self._settings.chain_id,
                    "gas": self._settings.gas_limit,
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)

        hex_hash = Web3.to_hex(tx_hash)
        logger.info("tx_submitted", action=action, tx_hash=hex_hash, nonce=nonce)

        receipt = await self._w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._settings.receipt_timeout_seconds
        )
        if receipt["status"] != 1:
            raise TransactionRevertedError(hex_hash, action)

        logger.info(
            "tx_confirmed",
            action=action,
            tx_hash=hex_hash,
            block=receipt.get("blockNumber"),
        )
        return hex_hash

    # Vault contract

    async def get_balance(self, vault: str, token: str) -> int:
        return await self._vault(vault).functions.getBalance(_checksum(token)).call()

    async def withdraw_to(
        self, vault: str, token: str, amount: int, recipient: str, sender: str
    ) -> str:
        call = self._vault(vault).functions.withdrawTo(
            _checksum(token), amount, _checksum(recipient)
        )
        return await self._send(call, sender, "withdraw")

    async def register_existing_tokens(
        self, vault: str, tokens: Sequence[str], sender: str
    ) -> str:
        call = self._vault(vault).functions.registerExistingTokens(
            [_checksum(t) for t in tokens]
        )
        return await self._send(call, sender, "register")

    async def deposit(self, vault: str, token: str, amount: int, sender: str) -> str:
        call = self._vault(vault).functions.deposit(_checksum(token), amount)
        return await self._send(call, sender, "deposit")

    async def sync_token_balance(self, vault: str, token: str, sender: str) -> str:
        call = self._vault(vault).functions.syncTokenBalance(_checksum(token))
        return await self._send(call, sender, "sync")

    async def get_supported_tokens(self, vault: str) -> list[str]:
        tokens = await self._vault(vault).functions.getAllSupportedTokens().call()
        return [str(t) for t in tokens]

    # ERC20

    async def approve(self, token: str, spender: str, amount: int, sender: str) -> str:
        call = self._erc20(token).functions.approve(_checksum(spender), amount)
        return await self._send(call, sender, "approve")

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return await self._erc20(token).functions.allowance(
            _checksum(owner), _checksum(spender)
        ).call()

    async def balance_of(self, token: str, owner: str) -> int:
        return await self._erc20(token).functions.balanceOf(_checksum(owner)).call()

    async def token_info(self, token: str) -> tuple[str, int]:
        cached = self._token_info.get(token.lower())
        if cached is not None:
            return cached
        contract = self._erc20(token)
        symbol = await contract.functions.symbol().call()
        decimals = await contract.functions.decimals().call()
        info = (str(symbol), int(decimals))
        self._token_info[token.lower()] = info
        return info
