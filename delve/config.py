"""Delve configuration — loaded from .env via pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class DelveSettings(BaseSettings):
    """All Delve configuration. Reads from .env file and DELVE_* environment variables."""

    # --- Generation API (OpenAI-compatible) ---
    generation_url: str = Field(
        default="https://api.openai.com",
        description="Base URL of the OpenAI-compatible generation API",
    )
    generation_api_key: str = Field(
        default="",
        description="Bearer token for the generation API (empty = not configured)",
    )
    generation_timeout: float = Field(
        default=120.0,
        description="HTTP timeout in seconds for a single generation call",
    )

    # --- Response cache ---
    cache_ttl_seconds: int = Field(default=30 * 60, description="Cache entry TTL")
    cache_sweep_seconds: int = Field(
        default=5 * 60,
        description="Interval between background sweeps of expired entries",
    )

    # --- Retry ---
    retry_max_attempts: int = Field(default=3, description="Attempts per generation call")
    retry_base_delay_ms: int = Field(default=1000, description="First backoff delay")

    # --- Session persistence ---
    session_timeout_seconds: int = Field(
        default=30 * 60,
        description="Inactivity after which a stored session is discarded",
    )
    session_backend: str = Field(
        default="file",
        description="Session storage backend: memory | file | redis",
    )
    session_dir: Path = Field(
        default=Path.home() / ".delve" / "sessions",
        description="Directory used by the file backend",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL used by the redis backend",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "DELVE_",
        "extra": "ignore",
    }


# Singleton, import this everywhere
settings = DelveSettings()
