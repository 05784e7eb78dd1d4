"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Base Sepolia deployments used by the default configuration
USDC_ADDRESS = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
WETH_ADDRESS = "0x4200000000000000000000000000000000000006"
UNISWAP_ROUTER_ADDRESS = "0x94cC0AaC535CCDB3C01d6787D6413C739ae12bc4"

# Pyth price feed ids
WETH_USD_FEED = "0x9d4294bbcd1174d6f2003ec365831e64cc31d9f6f15a2b85399db8d5000960f6"
USDC_USD_FEED = "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a"


class ExecutionSettings(BaseSettings):
    """Execution mode for on-chain and swap collaborators."""

    model_config = SettingsConfigDict(env_prefix="EXECUTION_")

    mode: Literal["paper", "live"] = "paper"
    # Paper vault starting balances, raw units keyed by token address
    paper_initial_balances: dict[str, int] = {
        WETH_ADDRESS: 1_000_000_000_000_000_000,
    }


class AutomationSettings(BaseSettings):
    """Initial automation config and trigger cadence.

    Thresholds are percent volatility. The live config can be changed
    at runtime through the API without a restart.
    """

    model_config = SettingsConfigDict(env_prefix="AUTOMATION_")

    enabled: bool = False
    soft_threshold: Decimal = Decimal("5.0")
    medium_threshold: Decimal = Decimal("10.0")
    aggressive_threshold: Decimal = Decimal("15.0")
    cooldown_minutes: int = 60
    max_daily_rebalances: int = 3
    notifications_enabled: bool = True
    check_interval_seconds: float = 60.0
    trigger_on_volatility_update: bool = True


class VolatilitySettings(BaseSettings):
    """Pyth Hermes polling and volatility window configuration."""

    model_config = SettingsConfigDict(env_prefix="VOLATILITY_")

    hermes_url: str = "https://hermes.pyth.network"
    feeds: dict[str, str] = {
        "WETH": WETH_USD_FEED,
        "USDC": USDC_USD_FEED,
    }
    primary_symbol: str = "WETH"  # drives automatic triggers
    poll_interval_seconds: float = 30.0
    window_size: int = 24
    backfill_on_start: bool = True
    backfill_spacing_seconds: int = 3600  # one sample per hour
    request_timeout_seconds: float = 10.0


class ChainSettings(BaseSettings):
    """RPC endpoint, signer key, and token addresses."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_")

    rpc_url: str = "https://sepolia.base.org"
    chain_id: int = 84532
    operator_private_key: SecretStr = SecretStr("")
    router_address: str = UNISWAP_ROUTER_ADDRESS
    stable_token_address: str = USDC_ADDRESS
    stable_token_symbol: str = "USDC"
    stable_token_decimals: int = 6
    tracked_tokens: list[str] = [WETH_ADDRESS]
    receipt_timeout_seconds: float = 120.0
    gas_limit: int = 500_000


class VaultSettings(BaseSettings):
    """Primary vault handled by the timer and volatility triggers."""

    model_config = SettingsConfigDict(env_prefix="VAULT_")

    address: str = ""
    operator_address: str = ""  # receives withdrawals and signs swaps
    jwt: SecretStr = SecretStr("")


class SagaSettings(BaseSettings):
    """Retry, settlement, and timeout parameters for the transaction saga."""

    model_config = SettingsConfigDict(env_prefix="SAGA_")

    max_attempts: int = 3
    retry_delay_seconds: float = 2.0
    settlement_delay_seconds: float = 2.0
    slippage_bps: int = 100  # 1%
    timeout_seconds: float = 600.0
    min_swap_amount: Decimal = Decimal("0.001")  # dust threshold, token units


class SwapSettings(BaseSettings):
    """Delegated swap service endpoint (live mode)."""

    model_config = SettingsConfigDict(env_prefix="SWAP_")

    service_url: str = "http://localhost:3000"
    auth_token: SecretStr = SecretStr("")
    timeout_seconds: float = 60.0


class NotifierSettings(BaseSettings):
    """Post-rebalance notifications. Empty webhook_url logs instead."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    webhook_url: str = ""
    timeout_seconds: float = 10.0


class StateSettings(BaseSettings):
    """Automation state persistence across restarts."""

    model_config = SettingsConfigDict(env_prefix="STATE_")

    enabled: bool = True
    db_path: str = "data/automation.db"
    history_limit: int = 50


class ApiSettings(BaseSettings):
    """REST API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    execution: ExecutionSettings = ExecutionSettings()
    automation: AutomationSettings = AutomationSettings()
    volatility: VolatilitySettings = VolatilitySettings()
    chain: ChainSettings = ChainSettings()
    vault: VaultSettings = VaultSettings()
    saga: SagaSettings = SagaSettings()
    swap: SwapSettings = SwapSettings()
    notifier: NotifierSettings = NotifierSettings()
    state: StateSettings = StateSettings()
    api: ApiSettings = ApiSettings()
