"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from governance_api.app.models import Tier
from governance_api.app.routing import DEFAULT_TIER_MODELS

PROJECT_ROOT = Path(__file__).resolve().parents[3]

# Ceiling for a single generation call, whatever the environment asks for.
MAX_GENERATION_TIMEOUT_S = 120.0


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "governance-api"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str = ""
    llm_provider: Literal["openai", "anthropic", "auto"] = "auto"
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    generation_timeout_s: float = Field(default=30.0, ge=0.5, le=MAX_GENERATION_TIMEOUT_S)
    generation_max_attempts: int = Field(default=3, ge=1, le=5)
    generation_backoff_s: float = Field(default=0.5, ge=0.0)
    generation_max_backoff_s: float = Field(default=8.0, ge=0.0)
    tier_models: dict[Tier, str] = Field(default_factory=lambda: dict(DEFAULT_TIER_MODELS))
    silent_execution_enabled: bool = True
    max_prompt_chars: int = Field(default=20_000, ge=1)
    admin_override_token: str = ""

    model_config = SettingsConfigDict(
        env_prefix="GOVERNANCE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_anthropic_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
