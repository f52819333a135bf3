"""Application configuration using pydantic-settings.

A single BIP39 seed phrase drives address derivation on all three networks.
The seed may be supplied in plaintext or Fernet-encrypted with a master key.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from custody.chains import Network, parse_network
from custody.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/custody.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging and SQL echo")

    # ======================
    # HD Wallet
    # ======================
    wallet_seed_phrase: Optional[str] = Field(
        default=None, description="BIP39 12/24 word seed phrase for HD derivation"
    )
    wallet_seed_encrypted: Optional[str] = Field(
        default=None, description="Fernet-encrypted seed phrase (requires MASTER_KEY)"
    )
    master_key: Optional[str] = Field(
        default=None, description="Master encryption key for the seed phrase (Fernet key)"
    )
    derivation_start_index: int = Field(
        default=1, description="First derivation index handed to users (0 is reserved)"
    )

    # ======================
    # Networks
    # ======================
    enabled_networks: str = Field(
        default="ERC20,BEP20,TRC20", description="Comma-separated list of networks to run"
    )

    # EVM JSON-RPC endpoints
    eth_rpc_url: str = Field(default="", description="Ethereum JSON-RPC URL")
    bsc_rpc_url: str = Field(default="", description="BSC JSON-RPC URL")
    eth_chain_id: int = Field(default=1, description="Ethereum chain ID")
    bsc_chain_id: int = Field(default=56, description="BSC chain ID")

    # TRON REST API
    tron_api_url: str = Field(default="https://api.trongrid.io", description="TronGrid API URL")
    tron_api_key: str = Field(default="", description="TronGrid API key")

    # USDT contracts
    usdt_contract_eth: str = Field(
        default="0xdAC17F958D2ee523a2206206994597C13D831ec7", description="USDT ERC20 contract"
    )
    usdt_contract_bsc: str = Field(
        default="0x55d398326f99059fF775485246999027B3197955", description="USDT BEP20 contract"
    )
    usdt_contract_trc20: str = Field(
        default="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t", description="USDT TRC20 contract"
    )

    # Hot wallets receiving swept funds (empty = sweeping disabled for that network)
    hot_wallet_eth: str = Field(default="", description="ERC20 hot wallet address")
    hot_wallet_bsc: str = Field(default="", description="BEP20 hot wallet address")
    hot_wallet_tron: str = Field(default="", description="TRC20 hot wallet address")

    # ======================
    # Upstream access
    # ======================
    rpc_timeout: float = Field(default=30.0, description="Per-call timeout in seconds")
    evm_log_chunk_size: int = Field(
        default=2000, description="Maximum block span per eth_getLogs query"
    )
    evm_address_batch_size: int = Field(
        default=500, description="Maximum recipient addresses per eth_getLogs topic filter"
    )
    tron_history_limit: int = Field(
        default=50, description="Transfers fetched per TRC20 address per cycle"
    )

    # ======================
    # Sweep thresholds and fee ceilings
    # ======================
    sweep_min_erc20: Decimal = Field(default=Decimal("50"), description="Minimum USDT to sweep on ERC20")
    sweep_min_bep20: Decimal = Field(default=Decimal("10"), description="Minimum USDT to sweep on BEP20")
    sweep_min_trc20: Decimal = Field(default=Decimal("10"), description="Minimum USDT to sweep on TRC20")

    max_gas_price_gwei_erc20: int = Field(default=50, description="ERC20 gas price ceiling (gwei)")
    max_gas_price_gwei_bep20: int = Field(default=10, description="BEP20 gas price ceiling (gwei)")
    max_energy_price_sun_trc20: int = Field(
        default=1000, description="TRC20 energy price ceiling (sun per energy unit)"
    )

    gas_limit_erc20: int = Field(default=100000, description="Gas limit for ERC20 transfer")
    gas_limit_bep20: int = Field(default=100000, description="Gas limit for BEP20 transfer")
    fee_limit_trc20: int = Field(
        default=100_000_000, description="TRC20 fee limit in sun (100 TRX)"
    )

    sweep_delay_seconds: float = Field(
        default=1.0, description="Pause between two address sweeps on one network"
    )

    # ======================
    # Deposit orders
    # ======================
    order_expiry_hours: Optional[int] = Field(
        default=None, description="Expire unconfirmed orders after N hours (None = never)"
    )

    # ======================
    # Scheduler
    # ======================
    scan_interval: int = Field(default=60, description="Seconds between scan cycles")
    confirm_interval: int = Field(default=30, description="Seconds between confirmation cycles")
    sweep_interval: int = Field(default=3600, description="Seconds between sweep cycles")
    expire_interval: int = Field(default=300, description="Seconds between expiry cycles")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def networks(self) -> list[Network]:
        """Parse enabled networks into a list of Network values."""
        return [parse_network(n) for n in self.enabled_networks.split(",") if n.strip()]

    @property
    def has_wallet(self) -> bool:
        """Check if a seed phrase (plain or encrypted) is configured."""
        if self.wallet_seed_encrypted:
            return bool(self.master_key)
        return bool(self.wallet_seed_phrase and len(self.wallet_seed_phrase.split()) >= 12)

    def get_seed_phrase(self) -> str:
        """Return the plaintext seed phrase.

        Raises:
            ConfigurationError: If no usable seed is configured
        """
        if self.wallet_seed_encrypted:
            if not self.master_key:
                raise ConfigurationError("WALLET_SEED_ENCRYPTED is set but MASTER_KEY is missing")
            from custody.crypto import decrypt_secret

            return decrypt_secret(self.wallet_seed_encrypted, self.master_key)

        if not self.wallet_seed_phrase:
            raise ConfigurationError("WALLET_SEED_PHRASE is not configured")
        return self.wallet_seed_phrase

    def get_rpc_url(self, network: "str | Network") -> str:
        """Get RPC/API base URL for a network."""
        url_map = {
            Network.ERC20: self.eth_rpc_url,
            Network.BEP20: self.bsc_rpc_url,
            Network.TRC20: self.tron_api_url,
        }
        return url_map[parse_network(network)]

    def get_chain_id(self, network: "str | Network") -> Optional[int]:
        """Get EVM chain ID (None for TRON)."""
        return {
            Network.ERC20: self.eth_chain_id,
            Network.BEP20: self.bsc_chain_id,
        }.get(parse_network(network))

    def get_token_contract(self, network: "str | Network") -> str:
        """Get the USDT contract address for a network."""
        contract_map = {
            Network.ERC20: self.usdt_contract_eth,
            Network.BEP20: self.usdt_contract_bsc,
            Network.TRC20: self.usdt_contract_trc20,
        }
        return contract_map[parse_network(network)]

    def get_hot_wallet(self, network: "str | Network") -> str:
        """Get the hot wallet address that receives swept funds."""
        wallet_map = {
            Network.ERC20: self.hot_wallet_eth,
            Network.BEP20: self.hot_wallet_bsc,
            Network.TRC20: self.hot_wallet_tron,
        }
        return wallet_map[parse_network(network)]

    def get_sweep_minimum(self, network: "str | Network") -> Decimal:
        """Minimum token balance worth sweeping."""
        return {
            Network.ERC20: self.sweep_min_erc20,
            Network.BEP20: self.sweep_min_bep20,
            Network.TRC20: self.sweep_min_trc20,
        }[parse_network(network)]

    def get_fee_ceiling(self, network: "str | Network") -> int:
        """Fee price ceiling in the network's base unit (wei per gas / sun per energy)."""
        return {
            Network.ERC20: self.max_gas_price_gwei_erc20 * 10**9,
            Network.BEP20: self.max_gas_price_gwei_bep20 * 10**9,
            Network.TRC20: self.max_energy_price_sun_trc20,
        }[parse_network(network)]

    def get_fee_limit(self, network: "str | Network") -> int:
        """Gas limit (EVM) or fee limit in sun (TRON) for one sweep transfer."""
        return {
            Network.ERC20: self.gas_limit_erc20,
            Network.BEP20: self.gas_limit_bep20,
            Network.TRC20: self.fee_limit_trc20,
        }[parse_network(network)]

    def validate_runtime(self) -> None:
        """Refuse to start half-configured.

        Raises:
            ConfigurationError: If the seed or any enabled network's endpoint
                or token contract is missing
        """
        if not self.has_wallet:
            raise ConfigurationError(
                "No HD wallet seed configured (WALLET_SEED_PHRASE or WALLET_SEED_ENCRYPTED)"
            )

        networks = self.networks
        if not networks:
            raise ConfigurationError("ENABLED_NETWORKS is empty")

        for network in networks:
            if not self.get_rpc_url(network):
                raise ConfigurationError(f"No RPC/API endpoint configured for {network.value}")
            if not self.get_token_contract(network):
                raise ConfigurationError(f"No USDT contract configured for {network.value}")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "wallet_configured": self.has_wallet,
            "seed_encrypted": bool(self.wallet_seed_encrypted),
            "networks": {
                network.value: {
                    "endpoint": self._redact_url(self.get_rpc_url(network)) or "(not set)",
                    "contract": self.get_token_contract(network),
                    "hot_wallet": self.get_hot_wallet(network) or "(not set)",
                    "sweep_min": str(self.get_sweep_minimum(network)),
                    "fee_ceiling": self.get_fee_ceiling(network),
                }
                for network in self.networks
            },
            "tron_api_key": "***" if self.tron_api_key else "(not set)",
            "intervals": {
                "scan": self.scan_interval,
                "confirm": self.confirm_interval,
                "sweep": self.sweep_interval,
                "expire": self.expire_interval,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
