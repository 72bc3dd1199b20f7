"""Application settings."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "taskchain-api"
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = ""

    # Workflow platform (catalog + runtime) and its public webhook endpoint.
    platform_base_url: str = "http://localhost:5678"
    platform_api_key: str = ""
    platform_timeout_s: float = Field(default=10.0, ge=0.1)
    webhook_base_url: str = "http://localhost:5678"
    webhook_timeout_s: float = Field(default=60.0, ge=0.1)
    execution_timeout_s: float = Field(default=300.0, ge=0.01)
    execution_poll_interval_s: float = Field(default=0.5, ge=0.0)

    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "google/gemini-2.5-flash"
    llm_api_key: str = ""
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)

    model_config = SettingsConfigDict(
        env_prefix="TASKCHAIN_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_llm_api_key(self) -> str:
        return self.llm_api_key or os.getenv("OPENROUTER_API_KEY", "")

    def resolved_webhook_base_url(self) -> str:
        return (self.webhook_base_url or self.platform_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
