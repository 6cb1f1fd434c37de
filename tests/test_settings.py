"""Tests for configuration settings."""

import pytest


def test_settings_loads_from_env():
    """Test that settings loads from environment variables."""
    # Import after env vars are set in conftest
    from fiscalia.config.settings import get_settings

    # Clear the cache to force reload
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.llm_provider == "openai"
    assert settings.openai_api_key.get_secret_value() == "sk-test"
    assert settings.anthropic_api_key.get_secret_value() == "sk-ant-test"
    assert settings.store_backend == "memory"


def test_settings_has_defaults():
    """Test that settings has sensible defaults."""
    from fiscalia.config.settings import get_settings

    get_settings.cache_clear()
    settings = get_settings()

    assert settings.history_window == 50
    assert settings.state_change_window == 10
    assert settings.snapshot_expense_limit == 100
    assert settings.quality_min_score == 70
    assert settings.quality_floor == 40
    assert settings.max_reply_length == 1000
    assert settings.retry_max_attempts == 3
    assert settings.circuit_failure_threshold == 5


def test_settings_are_cached():
    """Test that get_settings returns cached instance."""
    from fiscalia.config.settings import get_settings

    get_settings.cache_clear()

    settings1 = get_settings()
    settings2 = get_settings()

    assert settings1 is settings2


class TestProviderTimeout:
    """Tests for the per-provider model call timeout."""

    @pytest.mark.parametrize(
        "provider,expected",
        [("openai", 60.0), ("groq", 30.0), ("lm_studio", 120.0), ("ollama", 120.0)],
    )
    def test_defaults_per_provider(self, provider, expected):
        from fiscalia.config.settings import FlatSettings

        settings = FlatSettings(LLM_PROVIDER=provider)

        assert settings.provider_timeout() == expected

    def test_explicit_timeout_wins(self):
        from fiscalia.config.settings import FlatSettings

        settings = FlatSettings(LLM_PROVIDER="ollama", LLM_TIMEOUT_SECONDS=5)

        assert settings.provider_timeout() == 5.0
