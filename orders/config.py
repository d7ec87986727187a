"""
Orders — configuration

Both processes (API and worker) read the same environment variables.
DATABASE_URL is required; everything else has a local-development default.
"""

import logging
import os
import socket
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a .env file)."""

    # Storage
    database_url: str = Field(..., description="SQLAlchemy async URL, e.g. postgresql+asyncpg://...")
    database_echo: bool = False

    # Event channel (Redis Streams)
    redis_url: str = "redis://localhost:6379"
    order_stream: str = "order_events"
    consumer_group: str = "order-workers"
    consumer_name: str = Field(default_factory=_default_consumer_name)
    max_delivery_count: int = Field(default=10, ge=1)
    receive_block_ms: int = Field(default=1000, ge=1)  # BLOCK 0 would never return
    receive_batch_size: int = Field(default=1, ge=1)
    claim_idle_ms: int = Field(default=60_000, ge=0)
    stream_max_length: int = Field(default=10_000, ge=1)

    # Worker
    processing_delay_seconds: float = Field(default=5.0, ge=0)
    receive_retry_delay_seconds: float = Field(default=1.0, ge=0)

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    allowed_origins: str = "http://localhost:5173,http://localhost:3000,http://127.0.0.1:3000"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> list[str]:
        """Parse allowed origins from comma-separated string."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    """Configure the root logger once per process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
