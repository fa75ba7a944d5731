from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Runtime
    log_level: str = Field(default="INFO", description="Logging level")
    environment: str = Field(
        default="development",
        description="Deployment environment; 'production' hides raw error details",
    )

    # Chain RPC
    rpc_url: str = Field(default="", description="JSON-RPC endpoint used by the default provider")
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout for RPC calls")
    rpc_max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts for transient RPC failures when reading the pending nonce",
    )
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay between eth_getTransactionReceipt polls",
    )

    # Transaction engine
    max_retry_attempts: int = Field(
        default=3,
        ge=0,
        description="Retries granted to a transaction after a retryable failure",
        validation_alias=AliasChoices("max_retry_attempts", "REACT_APP_MAX_RETRY_ATTEMPTS"),
    )
    retry_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Base backoff delay; doubled on each further retry",
        validation_alias=AliasChoices("retry_delay_ms", "REACT_APP_RETRY_DELAY"),
    )
    transaction_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        description="How long to wait for a receipt before marking a transaction timed out",
        validation_alias=AliasChoices("transaction_timeout_ms", "REACT_APP_TRANSACTION_TIMEOUT"),
    )
    max_history_size: int = Field(default=1000, ge=1, description="Bounded transaction history size")
    max_queue_size: int = Field(default=50, ge=1, description="Maximum transactions awaiting confirmation")
    nonce_drift_threshold: int = Field(
        default=10,
        ge=0,
        description="Chain nonce lead over the tracked nonce that forces a tracker reset",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def has_rpc_url(self) -> bool:
        return bool(self.rpc_url)

    def resolve_rpc_url(self, override: Optional[str] = None) -> str:
        url = (override or self.rpc_url).strip()
        if not url:
            raise ValueError("No RPC URL configured (set RPC_URL)")
        return url


# Global settings instance
settings = Settings()
