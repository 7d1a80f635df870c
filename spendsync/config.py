"""Runtime configuration loaded from the environment.

Server and client settings are separate so that a client process never needs
database or AI credentials.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from spendsync.currency_conversion import normalize_currency


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SPENDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///./spendsync.db"
    secret_key: str = Field(default="change-me", description="Session cookie signing key")
    frontend_origin: str = "http://localhost:5173"

    upload_dir: str = "uploads"
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    default_currency: str = "USD"
    exchange_rate_url: str = "https://open.er-api.com/v6/latest"
    exchange_rate_ttl_seconds: int = Field(default=12 * 60 * 60, ge=0)

    ai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "SPENDSYNC_AI_API_KEY",
            "OPENROUTER_API_KEY",
            "AI_INTEGRATIONS_OPENROUTER_API_KEY",
        ),
    )
    ai_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        validation_alias=AliasChoices(
            "SPENDSYNC_AI_BASE_URL",
            "OPENROUTER_BASE_URL",
            "AI_INTEGRATIONS_OPENROUTER_BASE_URL",
        ),
    )
    ai_model: str = "openai/gpt-4o"
    ai_timeout_seconds: float = Field(default=60.0, gt=0)

    log_level: str = "INFO"
    log_json: bool = False
    seed_demo_data: bool = False

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, value: str) -> str:
        try:
            return normalize_currency(value)
        except ValueError:
            return "USD"


class ClientSettings(BaseSettings):
    """Settings for :mod:`spendsync.client` consumers."""

    model_config = SettingsConfigDict(
        env_prefix="SPENDSYNC_CLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_url: str = "http://localhost:8000"
    queue_path: str = ".spendsync/sync-queue.json"
    cache_path: str | None = ".spendsync/query-cache.json"
    request_timeout_seconds: float = Field(default=3.0, gt=0)
    # None keeps retrying rejected mutations forever.
    max_sync_attempts: int | None = Field(default=5, ge=1)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


@lru_cache()
def get_client_settings() -> ClientSettings:
    return ClientSettings()
