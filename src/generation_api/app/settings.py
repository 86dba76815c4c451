"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

DEFAULT_SYSTEM_PROMPT = (
    "You are a character in an alternate-timeline story. Stay in character, "
    "answer the reader's message, and keep the scenario's premise consistent."
)


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "generation-api"
    app_env: str = "dev"
    log_level: str = "INFO"

    coordination_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_s: float = Field(default=1.0, gt=0.0)
    message_store_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str = ""

    # Task lifecycle and long-poll timing.
    task_ttl_s: int = Field(default=600, ge=1)
    poll_wait_s: float = Field(default=2.0, ge=0.0)
    poll_interval_s: float = Field(default=0.25, gt=0.0)
    submit_guard_ttl_s: int = Field(default=30, ge=1)
    submit_guard_wait_s: float = Field(default=1.0, ge=0.0)

    worker_max_workers: int = Field(default=4, ge=1)
    persist_max_retries: int = Field(default=3, ge=0)
    persist_backoff_s: float = Field(default=0.5, ge=0.0)

    history_limit: int = Field(default=20, ge=0)
    fallback_lookback: int = Field(default=10, ge=2)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=0, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_max_tokens: int = Field(default=1024, ge=1)
    max_content_chars: int = Field(default=8000, ge=1)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="GENERATION_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    @model_validator(mode="after")
    def _check_poll_window(self) -> "Settings":
        if self.poll_interval_s > self.poll_wait_s > 0:
            raise ValueError("poll_interval_s must not exceed poll_wait_s")
        return self

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
