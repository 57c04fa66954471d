"""
Application configuration and settings.

Loads configuration from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Optional
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True

    # Document processing (server side)
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "OPENAI_API_KEY_DEV"),
    )
    openai_document_model: str = "gpt-4.1-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_document_timeout_s: float = 30.0

    # Device side: where the document proxy and booking API live
    document_service_url: str = "http://localhost:8000"
    api_base_url: str = "https://api-staging.dardoc.com"
    collector_party_id: str = "BOOM_HEALTH"
    api_timeout_s: float = 20.0

    # Offline submission queue
    queue_path: Path = Path("data/sample-submission-queue.v1.json")
    queue_sync_interval_s: float = 30.0
    queue_synced_retention_s: float = 300.0

    # Logging / telemetry
    log_level: str = "INFO"
    telemetry_enabled: bool = False

    @field_validator("api_base_url", "document_service_url", "openai_base_url")
    @classmethod
    def trim_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("collector_party_id")
    @classmethod
    def default_party_id(cls, v: str) -> str:
        return v.strip() or "BOOM_HEALTH"


# Global settings instance
settings = Settings()
