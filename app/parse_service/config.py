"""
Application configuration using Pydantic Settings.

Automatically loads environment variables from .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: str | None = None
    openai_model: str = "gpt-4.1"

    # Database
    database_url: str = "sqlite:///./parse_service.db"

    # Debug flags
    sql_debug: bool = False
    debug: bool = False

    # Parse job scheduling
    max_file_size_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    max_concurrent_extractions: int = Field(default=5, ge=1)
    max_queue_depth: int = Field(default=1000, ge=1)
    max_batch_size: int = Field(default=100, ge=1)
    sync_timeout_seconds: float = Field(default=60.0, gt=0)
    async_timeout_seconds: float = Field(default=300.0, gt=0)
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)

    # Webhooks
    webhook_secret: str = "change-me"
    # Per API key secrets, falls back to webhook_secret
    webhook_secrets: dict[str, str] = Field(default_factory=dict)
    webhook_timeout_seconds: float = Field(default=30.0, gt=0)
    # Delay before attempts 2..6
    webhook_retry_delays: list[float] = Field(
        default_factory=lambda: [60.0, 300.0, 1800.0, 7200.0, 43200.0]
    )
    batch_progress_min_interval_seconds: float = Field(default=0.0, ge=0)

    # Admission control
    # API key -> plan tier. Empty means every key is admitted on the free tier.
    api_keys: dict[str, str] = Field(default_factory=dict)
    rate_limits: dict[str, int] = Field(
        default_factory=lambda: {"free": 10, "pro": 100, "enterprise": 1000}
    )
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )

    model_config = SettingsConfigDict(
        # Load from .env file in the package directory
        env_file=Path(__file__).parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Case insensitive environment variable names
        case_sensitive=False,
    )

    @property
    def webhook_max_attempts(self) -> int:
        """Total delivery attempts including the first one."""
        return len(self.webhook_retry_delays) + 1

    def webhook_secret_for(self, api_key: str | None) -> str:
        """Resolve the signing secret for an account."""
        if api_key and api_key in self.webhook_secrets:
            return self.webhook_secrets[api_key]
        return self.webhook_secret


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application configuration loaded from environment.
    """
    return Settings()
