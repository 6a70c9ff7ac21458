"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for budgets, TTLs, thresholds and
provider credentials - nothing is hardcoded elsewhere.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = Field(default="INFO", description="Minimum log level")
    json_logs: bool | None = Field(
        default=None,
        description="Force JSON log output. Defaults to True in production only.",
    )

    # ------------------------------------------------------------------ #
    # Shared key-value store
    # ------------------------------------------------------------------ #
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for cache, checkpoints and metrics",
    )
    store_backend: Literal["redis", "memory"] = Field(
        default="redis",
        description="Store implementation. 'memory' is for tests and local dev only.",
    )
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------ #
    # Providers (LiteLLM)
    # ------------------------------------------------------------------ #
    openai_api_key: SecretStr | None = None
    anthropic_api_key: SecretStr | None = None
    google_api_key: SecretStr | None = None
    litellm_base_url: str | None = Field(
        default=None,
        description="Optional LiteLLM proxy base URL. Direct provider calls when unset.",
    )
    provider_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for a single upstream call, retries included",
    )
    provider_cooldown_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Time after a failure before an unhealthy provider is tried again",
    )
    provider_retry_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts per provider for transient rate-limit/unavailable errors",
    )
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_output_tokens: int = Field(default=4096, ge=1)

    # ------------------------------------------------------------------ #
    # Token budget
    # ------------------------------------------------------------------ #
    token_budget: int = Field(default=28000, ge=1000)
    token_overlap_reserve: int = Field(default=500, ge=0)
    token_estimator: Literal["chars", "tiktoken"] = "chars"
    chars_per_token: int = Field(default=4, ge=1)

    # ------------------------------------------------------------------ #
    # Safety
    # ------------------------------------------------------------------ #
    max_input_length: int = Field(default=10000, ge=100)
    profanity_threshold: int = Field(
        default=3,
        ge=0,
        description="Profanity occurrences tolerated before a toxicity issue is raised",
    )

    # ------------------------------------------------------------------ #
    # Response cache TTLs (seconds)
    # ------------------------------------------------------------------ #
    cache_ttl_provider_response: int = Field(default=86400, ge=1)
    cache_ttl_resource_content: int = Field(default=21600, ge=1)
    cache_ttl_report_section: int = Field(default=7200, ge=1)
    cache_ttl_generic: int = Field(default=3600, ge=1)

    # ------------------------------------------------------------------ #
    # Checkpoints
    # ------------------------------------------------------------------ #
    max_checkpoints: int = Field(default=10, ge=1)
    checkpoint_ttl_seconds: int = Field(default=3600, ge=60)
    checkpoint_message_window: int = Field(default=10, ge=1)
    recovery_log_limit: int = Field(default=100, ge=1)

    # ------------------------------------------------------------------ #
    # Metrics & alerting
    # ------------------------------------------------------------------ #
    slow_response_ms: float = Field(default=10000.0, gt=0)
    high_error_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    error_rate_min_requests: int = Field(
        default=20,
        ge=1,
        description="Requests required in the hour before the error-rate alert is evaluated",
    )
    hourly_token_limit: int = Field(default=25000, ge=1)
    hourly_cost_threshold: float = Field(default=50.0, gt=0)
    metrics_retention_seconds: int = Field(default=604800, ge=3600)
    alert_retention_seconds: int = Field(default=86400, ge=60)
    max_active_alerts: int = Field(default=100, ge=1)
    duration_sample_size: int = Field(default=1000, ge=10)

    # ------------------------------------------------------------------ #
    # Feature toggles
    # ------------------------------------------------------------------ #
    enable_caching: bool = True
    enable_model_routing: bool = True
    enable_checkpointing: bool = True
    enable_input_validation: bool = True
    enable_output_filtering: bool = True

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @model_validator(mode="after")
    def _validate_production_config(self) -> Settings:
        """Refuse to start in production without providers or a durable store."""
        if self.environment != Environment.PROD:
            return self

        errors: list[str] = []
        if not self.configured_provider_keys:
            errors.append(
                "No provider API key configured. Set at least one of "
                "OPENAI_API_KEY, ANTHROPIC_API_KEY or GOOGLE_API_KEY."
            )
        if self.store_backend == "memory":
            errors.append(
                "STORE_BACKEND=memory loses checkpoints and metrics on restart. "
                "Use redis in production."
            )

        if errors:
            raise RuntimeError(
                "PRODUCTION STARTUP BLOCKED -- Invalid configuration:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    @property
    def configured_provider_keys(self) -> dict[str, str]:
        """Map provider name to its API key, for providers that have one."""
        keys: dict[str, str] = {}
        for name, secret in (
            ("openai", self.openai_api_key),
            ("anthropic", self.anthropic_api_key),
            ("google", self.google_api_key),
        ):
            if secret is not None and secret.get_secret_value():
                keys[name] = secret.get_secret_value()
        return keys

    @property
    def use_json_logs(self) -> bool:
        if self.json_logs is not None:
            return self.json_logs
        return self.is_prod

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Call directly in non-request contexts (startup, scripts) or via
    FastAPI's Depends(get_settings) in endpoints.
    """
    return Settings()
