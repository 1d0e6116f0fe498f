"""
Configuration management for the purchase relayer.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

ALCHEMY_SOURCE_WS = "wss://arb-mainnet.g.alchemy.com/v2/{key}"
ALCHEMY_DESTINATION_RPC = "https://eth-sepolia.g.alchemy.com/v2/{key}"


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Credentials
    private_key: str = Field(default="", description="Funding account private key")
    alchemy_api_key: str = Field(default="", description="Chain provider API key")

    # Source chain (purchase events)
    source_ws_url: Optional[str] = Field(
        default=None,
        description="Source chain WebSocket URL (defaults to Alchemy Arbitrum)",
    )
    purchase_contract_address: str = "0x669AA9f2D877d8aa874256a6115f011970f9f8e7"
    purchase_event_name: str = "PurchaseOccurred"

    # Destination chain (payouts)
    destination_rpc_url: Optional[str] = Field(
        default=None,
        description="Destination chain HTTP RPC URL (defaults to Alchemy Sepolia)",
    )
    destination_chain_id: int = 11155111
    gas_limit: int = 21_000

    # Payout math
    conversion_rate: Decimal = Field(
        default=Decimal("0.1"),
        description="Stable units paid per native unit",
    )
    payout_mismatch_policy: str = Field(
        default="warn",
        description="What to do when event payout differs from the computed one: warn or reject",
    )

    # Connection supervision
    reconnect_initial_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    reconnect_max_retries: Optional[int] = None
    startup_lookback_blocks: int = 0
    replay_chunk_blocks: int = 2_000

    # Execution
    event_queue_size: int = 100
    max_concurrent_events: int = 8
    max_submit_attempts: int = 3
    submit_retry_delay: float = 2.0
    confirmation_timeout_seconds: float = 180.0
    reconcile_interval_seconds: float = 300.0
    shutdown_grace_seconds: float = 30.0

    # Persistence
    database_url: str = "sqlite:///./relayer.db"
    tx_log_path: str = "sepolia_tx_log.json"

    # Relay log HTTP endpoint
    log_host: str = "127.0.0.1"
    log_port: int = 3001
    allowed_origins: list[str] = Field(default=["http://localhost:3000"])

    def resolved_source_ws_url(self) -> str:
        """Source WebSocket URL, built from the provider key if not set."""
        if self.source_ws_url:
            return self.source_ws_url
        return ALCHEMY_SOURCE_WS.format(key=self.alchemy_api_key)

    def resolved_destination_rpc_url(self) -> str:
        """Destination RPC URL, built from the provider key if not set."""
        if self.destination_rpc_url:
            return self.destination_rpc_url
        return ALCHEMY_DESTINATION_RPC.format(key=self.alchemy_api_key)


@dataclass
class RelayerConfig:
    """Validated relayer configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """
        Load configuration from environment.

        Raises:
            ConfigurationError: If the funding credential or provider key is missing
        """
        settings = Settings(_env_file=env_path) if env_path else Settings()
        config = cls(settings=settings)
        config.validate()
        return config

    def validate(self) -> None:
        """Check the settings required to start relaying."""
        s = self.settings

        if not s.private_key:
            raise ConfigurationError(
                "PRIVATE_KEY environment variable is required. "
                "This is the funding account that sends payouts"
            )

        if not s.alchemy_api_key and not (s.source_ws_url and s.destination_rpc_url):
            raise ConfigurationError(
                "ALCHEMY_API_KEY environment variable is required "
                "unless SOURCE_WS_URL and DESTINATION_RPC_URL are both set"
            )

        if s.payout_mismatch_policy not in ("warn", "reject"):
            raise ConfigurationError(
                f"PAYOUT_MISMATCH_POLICY must be 'warn' or 'reject', got {s.payout_mismatch_policy!r}"
            )

        if s.conversion_rate <= 0:
            raise ConfigurationError("CONVERSION_RATE must be positive")

        if s.max_submit_attempts < 1:
            raise ConfigurationError("MAX_SUBMIT_ATTEMPTS must be at least 1")
