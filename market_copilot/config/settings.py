"""Centralized configuration via pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client and backend configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", alias="LOG_LEVEL")

    # Backend
    api_base: str = Field(default="http://localhost:8000", alias="MARKET_COPILOT_API_BASE")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")

    # Run submission
    retry_delay_seconds: float = Field(default=2.0, alias="RETRY_DELAY_SECONDS")
    # Superseded runs are ignored, not aborted, unless this is set.
    cancel_superseded_requests: bool = Field(default=False, alias="CANCEL_SUPERSEDED_REQUESTS")

    # Chat
    chat_stall_timeout_seconds: float = Field(default=45.0, alias="CHAT_STALL_TIMEOUT_SECONDS")
    fee_quote_timeout_seconds: float = Field(default=12.0, alias="FEE_QUOTE_TIMEOUT_SECONDS")

    # Progress simulation
    progress_tick_seconds: float = Field(default=0.05)
    progress_min_stage_seconds: float = Field(default=0.4)
    progress_ease_factor: float = Field(default=0.2)

    # Contract backend server
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")

    # Contract backend rate limiting
    rate_limit_per_minute: int = Field(default=30, alias="RATE_LIMIT_PER_MINUTE")
    rate_limit_burst: int = Field(default=5, alias="RATE_LIMIT_BURST")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
