"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from resilience.config import Environment, Settings, get_settings


class TestSettings:
    """Test Settings model and validation."""

    def test_default_settings_load_correctly(self):
        """Defaults match the documented budgets, TTLs and thresholds."""
        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEV
        assert settings.debug is True  # Auto-set from DEV environment
        assert settings.token_budget == 28000
        assert settings.max_checkpoints == 10
        assert settings.provider_cooldown_seconds == 300
        assert settings.cache_ttl_provider_response == 86400
        assert settings.cache_ttl_resource_content == 21600
        assert settings.cache_ttl_report_section == 7200
        assert settings.cache_ttl_generic == 3600

    def test_environment_enum_values(self):
        assert Environment.DEV == "dev"
        assert Environment.PROD == "prod"
        assert Environment.TEST == "test"

    def test_is_dev_property_returns_true_for_test(self):
        settings = Settings(environment=Environment.TEST)
        assert settings.is_dev is True
        assert settings.is_prod is False

    def test_debug_auto_enabled_in_dev(self):
        """_set_debug_from_env overrides debug=False in dev."""
        settings = Settings(environment=Environment.DEV, debug=False)
        assert settings.debug is True

    def test_production_rejects_missing_provider_keys(self):
        with pytest.raises((RuntimeError, ValidationError), match="No provider API key"):
            Settings(
                environment=Environment.PROD,
                store_backend="redis",
                openai_api_key=None,
                anthropic_api_key=None,
                google_api_key=None,
            )

    def test_production_rejects_memory_store(self):
        with pytest.raises((RuntimeError, ValidationError), match="STORE_BACKEND=memory"):
            Settings(
                environment=Environment.PROD,
                store_backend="memory",
                openai_api_key="sk-production-key",
            )

    def test_production_accepts_valid_config(self):
        settings = Settings(
            environment=Environment.PROD,
            store_backend="redis",
            anthropic_api_key="sk-production-key",
            debug=False,
        )
        assert settings.is_prod is True
        assert settings.debug is False
        assert settings.use_json_logs is True

    def test_configured_provider_keys_skips_empty(self):
        settings = Settings(
            environment=Environment.TEST,
            openai_api_key="sk-openai",
            anthropic_api_key="",
            google_api_key=None,
        )
        assert settings.configured_provider_keys == {"openai": "sk-openai"}

    def test_api_keys_are_not_exposed_in_repr(self):
        settings = Settings(environment=Environment.TEST, openai_api_key="sk-secret-value")
        assert "sk-secret-value" not in repr(settings)

    def test_json_logs_override(self):
        settings = Settings(environment=Environment.TEST, json_logs=True)
        assert settings.use_json_logs is True

    def test_token_budget_lower_bound(self):
        with pytest.raises(ValidationError):
            Settings(token_budget=10)

    def test_high_error_rate_is_a_fraction(self):
        with pytest.raises(ValidationError):
            Settings(high_error_rate=5)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
