"""Configuration models for the tiered assistant."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RouterConfig(BaseModel):
    """Configures the tier classification call and its guardrails."""

    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    max_output_tokens: int = Field(default=256, ge=16)
    timeout_seconds: float = Field(default=8.0, gt=0.0)
    enforce_keyword_guardrails: bool = True


class RateLimitConfig(BaseModel):
    """Configures admission control for the deep research tier."""

    pro_research_daily_limit: int = Field(default=10, ge=1)
    fail_open: bool = True
    key_prefix: str = "pro_research"


class ExecutorConfig(BaseModel):
    """Configures tier executors, capability timeouts and source caps."""

    generation_timeout_seconds: float = Field(default=45.0, gt=0.0)
    retrieval_timeout_seconds: float = Field(default=15.0, gt=0.0)
    stream_chunk_timeout_seconds: float = Field(default=30.0, gt=0.0)
    borderline_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    borderline_search_results: int = Field(default=3, ge=1)
    max_search_queries: int = Field(default=2, ge=1, le=5)
    results_per_query: int = Field(default=5, ge=1, le=20)
    max_sources: int = Field(default=10, ge=1)
    research_source_classes: list[str] = Field(
        default_factory=lambda: ["pubmed", "clinical_trials", "arxiv", "medical_web"]
    )
    results_per_class: int = Field(default=5, ge=1, le=25)
    max_research_sources: int = Field(default=25, ge=1)
    degraded_answer: str = (
        "I couldn't complete this answer right now because one of my tools is "
        "unavailable. Please try again in a moment."
    )


class SessionConfig(BaseModel):
    """Configures the short-lived conversation context used by streaming."""

    max_turns: int = Field(default=10, ge=1)
    idle_ttl_seconds: float = Field(default=1800.0, gt=0.0)
    max_sessions: int = Field(default=1000, ge=1)


class StreamConfig(BaseModel):
    """Configures server-sent event delivery."""

    max_bytes: int = Field(default=9_500_000, ge=1024)
    heartbeat_seconds: float = Field(default=15.0, gt=0.0)


class ServiceConfig(BaseModel):
    """Configures request validation for the pipeline."""

    max_question_chars: int = Field(default=4000, ge=1)


class Settings(BaseSettings):
    """Process settings loaded from the environment and `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    openai_api_key: SecretStr | None = None
    openai_model: str = Field(default="gpt-4o-mini", description="Model for tiers 1 and 2")
    router_model: str = Field(default="gpt-4o-mini", description="Cheap classification model")
    research_model: str = Field(default="gpt-4o", description="Model for deep research synthesis")

    search_api_url: str | None = Field(default=None, description="Base URL of the search provider")
    search_api_key: SecretStr | None = None

    pro_research_daily_limit: int = Field(default=10, ge=1)
    rate_limit_fail_open: bool = True
    counter_store: Literal["memory", "sqlite"] = "memory"
    counter_db_path: str = "tiered_assistant_usage.db"

    log_level: str = "INFO"

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            pro_research_daily_limit=self.pro_research_daily_limit,
            fail_open=self.rate_limit_fail_open,
        )
