"""Application configuration using pydantic-settings.

Covers the store, the external ledger endpoints, the deposit pipeline timings
and the operator alert channel.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


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
        default="sqlite+aiosqlite:///./data/creditsync.db",
        description="Database connection URL",
    )
    database_busy_timeout: float = Field(
        default=30.0, description="Seconds a SQLite writer waits on a locked database"
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Chain endpoints
    # ======================
    blockchain_network: str = Field(default="mainnet", description="Network name")
    chain_id: int = Field(default=1, description="Chain ID used when signing sweeps")
    eth_rpc_url: str = Field(
        default="https://eth.llamarpc.com", description="Ethereum HTTP JSON-RPC URL"
    )
    alchemy_websocket_url: str = Field(default="", description="Alchemy WebSocket URL")
    infura_websocket_url: str = Field(default="", description="Infura WebSocket URL")
    rpc_timeout: float = Field(default=15.0, description="Per-call RPC timeout in seconds")

    # ======================
    # Deposit pipeline
    # ======================
    confirmations_required: int = Field(default=12, description="Confirmation depth")
    min_deposit_usd: Decimal = Field(
        default=Decimal("5.00"), description="Minimum deposit value in USD"
    )
    address_refresh_interval: float = Field(
        default=600.0, description="Seconds between monitored address refreshes"
    )
    confirmation_check_interval: float = Field(
        default=30.0, description="Seconds between confirmation monitor ticks"
    )
    confirmation_timeout: float = Field(
        default=600.0, description="Seconds to wait for confirmation depth"
    )
    confirmation_poll_interval: float = Field(
        default=4.0, description="Receipt polling period while waiting for confirmations"
    )
    catchup_interval: float = Field(
        default=3600.0, description="Seconds between catch-up reconciler runs"
    )
    reconnect_delay: float = Field(
        default=5.0, description="Seconds to wait before reconnecting the stream"
    )
    credits_history_limit: int = Field(
        default=1000, description="Credit history entries kept per account"
    )

    # ======================
    # Assets
    # ======================
    token_contracts: dict[str, str] = Field(
        default={"USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7"},
        description="Monitored ERC20 tokens: symbol -> contract address",
    )
    asset_decimals: dict[str, int] = Field(
        default={"ETH": 18, "USDT": 6}, description="Decimal precision per asset"
    )

    # ======================
    # Pricing
    # ======================
    coingecko_api_url: str = Field(
        default="https://api.coingecko.com/api/v3", description="CoinGecko API URL"
    )
    asset_price_ids: dict[str, str] = Field(
        default={"ETH": "ethereum", "USDT": "tether"},
        description="Asset symbol -> CoinGecko id",
    )
    price_cache_ttl: float = Field(default=60.0, description="Price cache TTL in seconds")
    gas_price_cache_ttl: float = Field(
        default=60.0, description="Fee data cache TTL in seconds"
    )

    # ======================
    # Custody
    # ======================
    admin_wallet_address: Optional[str] = Field(
        default=None, description="Custodial address receiving swept deposits"
    )
    wallet_seed_phrase: Optional[str] = Field(
        default=None, description="Seed phrase the deposit addresses are derived from"
    )

    # ======================
    # Operator alerts
    # ======================
    telegram_bot_token: str = Field(default="", description="Telegram bot token from BotFather")
    operator_chat_id: Optional[int] = Field(
        default=None, description="Telegram chat receiving operator alerts"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_wallet(self) -> bool:
        """Check if wallet seed phrase is configured."""
        return bool(self.wallet_seed_phrase and len(self.wallet_seed_phrase.split()) >= 12)

    @property
    def websocket_url(self) -> str:
        """Streaming endpoint, Alchemy first."""
        return self.alchemy_websocket_url or self.infura_websocket_url

    def decimals_for(self, asset: str) -> int:
        """Get decimal precision for an asset (18 if unknown)."""
        return self.asset_decimals.get(asset.upper(), 18)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "network": self.blockchain_network,
            "database_url": self._redact_url(self.database_url),
            "rpc": self.eth_rpc_url,
            "websocket": "***" if self.websocket_url else "(not set)",
            "confirmations_required": self.confirmations_required,
            "min_deposit_usd": str(self.min_deposit_usd),
            "intervals": {
                "address_refresh": self.address_refresh_interval,
                "confirmation_check": self.confirmation_check_interval,
                "confirmation_timeout": self.confirmation_timeout,
                "catchup": self.catchup_interval,
                "reconnect": self.reconnect_delay,
            },
            "tokens": self.token_contracts,
            "admin_wallet": self.admin_wallet_address or "(not set)",
            "wallet_configured": self.has_wallet,
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "operator_chat_id": self.operator_chat_id or "(not set)",
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
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
