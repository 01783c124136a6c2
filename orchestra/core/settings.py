"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from orchestra.constants import (
    APP_NAME,
    APP_VERSION,
    DEFAULT_DB_PATH,
    DEFAULT_INITIAL_POLL_DELAY_MS,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_PRESELECTED_SITES,
    DEFAULT_SETTLE_DELAY_MS,
    DEFAULT_STAGGER_DELAY_MS,
    MAX_PERSISTED_JOBS,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = APP_NAME
    app_version: str = APP_VERSION

    # Storage
    database_path: Path = DEFAULT_DB_PATH
    max_persisted_jobs: int = Field(default=MAX_PERSISTED_JOBS, ge=1, le=500)

    # Logging
    log_level: str = "INFO"

    # Remote job backend
    job_backend_url: str = "http://localhost:8000"
    job_auth_token: str = ""
    job_request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    # Query interpreter
    openai_api_key: str = ""
    interpreter_enabled: bool = True
    interpreter_model: str = "openai:gpt-4o-mini"
    interpreter_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    interpreter_keyword_fallback: bool = True
    max_preselected_sites: int = Field(default=DEFAULT_PRESELECTED_SITES, ge=1, le=25)

    # Orchestration
    max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1, le=25)
    stagger_delay_ms: int = Field(default=DEFAULT_STAGGER_DELAY_MS, ge=0, le=60000)
    poll_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=100, le=60000)
    initial_poll_delay_ms: int = Field(default=DEFAULT_INITIAL_POLL_DELAY_MS, ge=0, le=60000)
    settle_delay_ms: int = Field(default=DEFAULT_SETTLE_DELAY_MS, ge=0, le=10000)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""

    _load_env()
    return Settings()


def _load_env() -> None:
    """Force-load .env from repo root with override."""

    repo_root = Path(__file__).resolve().parents[2]
    env_path = repo_root / ".env"
    load_dotenv(env_path, override=True)
