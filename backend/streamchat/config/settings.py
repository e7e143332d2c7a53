"""Application settings using Pydantic BaseSettings."""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_default_db_path() -> str:
    """Get absolute path to default SQLite database."""
    # backend/streamchat/config/ -> backend/
    config_dir = os.path.dirname(os.path.abspath(__file__))
    backend_dir = os.path.dirname(os.path.dirname(config_dir))
    db_path = os.path.join(backend_dir, "data", "streamchat.db")
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    cors_origins: str = Field(default="http://localhost:3000")

    # Database
    database_url: str = Field(default_factory=_get_default_db_path)

    # Upstream provider (OpenAI-compatible, OpenRouter by default)
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1")
    openrouter_api_key: str = Field(default="")
    default_model: str = Field(default="meta-llama/llama-3.2-11b-vision-instruct:free")
    provider_timeout_seconds: int = Field(default=120)
    provider_max_retries: int = Field(default=1)
    models_cache_ttl_seconds: int = Field(default=3600)

    # Streaming pipeline
    stream_timeout_seconds: float = Field(default=180.0)
    sse_ping_interval_seconds: float = Field(default=5.0)
    batch_max_deltas: int = Field(default=3)
    batch_interval_ms: float = Field(default=20.0)
    title_interval_ms: float = Field(default=50.0)
    title_pacing_ms: float = Field(default=25.0)
    persist_interval_seconds: float = Field(default=2.0)
    broadcast_queue_size: int = Field(default=500)
    message_max_length: int = Field(default=4000)

    # Conversation titles
    default_conversation_title: str = Field(default="New conversation")
    title_context_messages: int = Field(default=7)
    title_regen_every: int = Field(default=7)

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production")
        return vv

    @field_validator("batch_max_deltas", "title_context_messages", "title_regen_every")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @model_validator(mode="after")
    def validate_cross_field_constraints(self) -> "Settings":
        # The keepalive has to fire well inside the overall pipeline ceiling.
        if self.sse_ping_interval_seconds <= 0:
            raise ValueError("SSE_PING_INTERVAL_SECONDS must be positive")
        if self.stream_timeout_seconds <= self.sse_ping_interval_seconds:
            raise ValueError(
                "STREAM_TIMEOUT_SECONDS must be greater than SSE_PING_INTERVAL_SECONDS"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
