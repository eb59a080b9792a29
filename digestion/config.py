"""
Digestion Configuration Module

Loads all worker and API settings from environment variables using Pydantic Settings.
Provides centralized configuration for Redis, the digestion queue, Supabase, and Gemini.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def find_env_file() -> Path:
    """Find .env file by traversing up from current directory."""
    current = Path(__file__).resolve().parent
    for _ in range(5):  # Check up to 5 levels up
        env_path = current / ".env"
        if env_path.exists():
            return env_path
        current = current.parent
    # Default to project root assumption
    return Path(__file__).resolve().parent.parent / ".env"


class DigestionConfig(BaseSettings):
    """Digestion configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Capture Digestion Queue"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    worker_name: str = "digestion-worker"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 2

    # CORS
    cors_origins: list[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = Field(default=["*"])
    cors_allow_headers: list[str] = Field(default=["*"])

    # Redis configuration (use REDIS_URL directly)
    redis_url: str = Field(default="redis://localhost:6379")
    redis_max_connections: int = Field(default=20)
    broker_heartbeat_seconds: int = Field(default=30)

    # Queue topology
    queue_key_prefix: str = Field(default="digestion")
    queue_name: str = Field(default="digestion-jobs")
    dead_letter_exchange: str = Field(default="digestion-dlx")
    failed_queue_name: str = Field(default="digestion-failed")
    queue_max_priority: int = Field(default=10)

    # Consumer settings
    consumer_poll_interval: float = Field(default=0.5)
    stale_delivery_seconds: int = Field(default=300)

    # Load governor
    overload_threshold: int = Field(default=100)
    pause_threshold: int = Field(default=200)
    default_job_duration_seconds: float = Field(default=20.0)

    # Progress tracking
    progress_retention_seconds: int = Field(default=300)

    # Metrics and ARQ maintenance queue
    metrics_port: int = Field(default=9464)
    arq_queue_name: str = Field(default="digestion:maintenance")

    # Event streams
    event_stream_prefix: str = Field(default="events")
    event_stream_maxlen: int = Field(default=10000)

    # Content extraction
    max_content_chars: int = Field(default=20000)

    # Supabase configuration
    supabase_url: str = Field(...)
    supabase_service_key: SecretStr = Field(...)
    captures_table: str = Field(default="captures")

    # Gemini configuration (matches env var GOOGLE_AI_API_KEY)
    google_ai_api_key: SecretStr = Field(...)
    gemini_model: str = Field(default="gemini-2.5-flash")
    gemini_temperature: float = Field(default=0.3)
    gemini_max_tokens: int = Field(default=2048)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


@lru_cache
def get_config() -> DigestionConfig:
    """Get cached digestion configuration instance."""
    return DigestionConfig()


# Convenience accessor
config = get_config()
