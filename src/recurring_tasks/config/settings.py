"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "recurring-tasks"
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = ""

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    max_tool_steps: int = Field(default=10, ge=1)
    capability_timeout_s: float = Field(default=20.0, ge=0.01)
    capability_max_retries: int = Field(default=0, ge=0)
    iteration_timeout_s: float = Field(default=300.0, gt=0.0)
    max_consecutive_failures: int = Field(default=10, ge=0)

    log_retention: int = Field(default=200, ge=1)
    recent_log_limit: int = Field(default=20, ge=1)
    min_interval_ms: int = Field(default=60_000, ge=1)
    max_interval_ms: int = Field(default=86_400_000, ge=1)
    max_concurrent_tasks: int = Field(default=10, ge=1)

    billing_url: str = ""
    billing_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="RECURRING_TASKS_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
