"""
Configuration for the TipChain status watchers.
"""

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

RELAY_API_PROD = "https://api.relay.link"
RELAY_API_TESTNET = "https://api.testnets.relay.link"

APECHAIN_ID = 33139


class Settings(BaseSettings):
    """
    Watcher settings.

    All settings can be overridden via environment variables or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Chain RPC
    rpc_url_template: str = Field(
        default="https://{chain_id}.rpc.thirdweb.com",
        description="RPC URL template, formatted with chain_id",
    )
    rpc_urls: dict[int, str] = Field(
        default_factory=dict,
        description="Per-chain RPC URL overrides (JSON object keyed by chain id)",
    )
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    # Bridging API
    testnet: bool = Field(default=False, description="Use testnet endpoints")
    relay_api_url: Optional[str] = Field(
        default=None,
        description="Relay bridging API base URL (defaults by network)",
    )

    # Relay heuristics
    settlement_chain_id: int = Field(
        default=APECHAIN_ID,
        description="Chain where tips settle; relays into it are estimated faster",
    )

    # Balances
    balance_cache_ttl: float = Field(
        default=5.0, gt=0, description="Balance cache freshness window in seconds"
    )
    balance_refresh_interval: float = Field(
        default=2.0, gt=0, description="Poll interval used after a transaction"
    )

    def rpc_url_for(self, chain_id: int) -> str:
        """Return the RPC endpoint for a chain."""
        if chain_id in self.rpc_urls:
            return self.rpc_urls[chain_id]
        return self.rpc_url_template.format(chain_id=chain_id)

    def resolved_relay_api_url(self) -> str:
        """Return the bridging API base URL, defaulting by network."""
        if self.relay_api_url:
            return self.relay_api_url.rstrip("/")
        return RELAY_API_TESTNET if self.testnet else RELAY_API_PROD


class WatchTransactionOptions(BaseModel):
    """Options for a transaction watch."""

    max_retries: int = Field(default=100, ge=0, description="Re-poll attempts before failing")
    retry_interval: float = Field(default=3.0, gt=0, description="Seconds between polls")
    timeout: float = Field(default=300.0, gt=0, description="Overall deadline in seconds")
    confirmations_required: int = Field(default=1, ge=1, description="Minimum confirmation depth")


class RelayWatchOptions(BaseModel):
    """Options for relay tracking."""

    max_wait_time: float = Field(default=600.0, gt=0, description="Overall deadline in seconds")
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between polls")
    enable_progress_updates: bool = Field(
        default=True,
        description="Report every poll; if false only report when progress or status changes",
    )


class BalanceWatchOptions(BaseModel):
    """Options for a persistent balance watch."""

    poll_interval: float = Field(default=10.0, gt=0, description="Seconds between reads")
    emit_initial: bool = Field(
        default=True, description="Report the initial balance before any change"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
