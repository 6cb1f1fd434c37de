"""Configuration settings for the Fiscalia chat orchestration service."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

LLMProvider = Literal["openrouter", "groq", "lm_studio", "openai", "anthropic", "ollama"]


class FlatSettings(BaseSettings):
    """Flat settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Persistent store
    store_backend: Literal["memory", "supabase"] = Field(
        default="memory", validation_alias="STORE_BACKEND"
    )
    supabase_url: str | None = Field(default=None, validation_alias="SUPABASE_URL")
    supabase_service_role_key: SecretStr | None = Field(
        default=None, validation_alias="SUPABASE_SERVICE_ROLE_KEY"
    )
    db_timeout_seconds: float = Field(default=10.0, validation_alias="DB_TIMEOUT_SECONDS")

    # Model provider
    llm_provider: LLMProvider = Field(default="openrouter", validation_alias="LLM_PROVIDER")
    openrouter_api_key: SecretStr | None = Field(
        default=None, validation_alias="OPENROUTER_API_KEY"
    )
    groq_api_key: SecretStr | None = Field(default=None, validation_alias="GROQ_API_KEY")
    openai_api_key: SecretStr | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: SecretStr | None = Field(
        default=None, validation_alias="ANTHROPIC_API_KEY"
    )
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1", validation_alias="OPENROUTER_BASE_URL"
    )
    groq_base_url: str = Field(
        default="https://api.groq.com/openai/v1", validation_alias="GROQ_BASE_URL"
    )
    lm_studio_url: str = Field(
        default="http://localhost:1234/v1", validation_alias="LM_STUDIO_URL"
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434", validation_alias="OLLAMA_BASE_URL"
    )
    ai_model: str = Field(default="openai/gpt-4o-mini", validation_alias="AI_MODEL")
    claude_model: str = Field(default="claude-haiku-4-5", validation_alias="CLAUDE_MODEL")
    ollama_model: str = Field(default="qwen3:8b", validation_alias="OLLAMA_MODEL")
    ai_proxy_referer: str = Field(
        default="https://fiscalia.app", validation_alias="AI_PROXY_REFERER"
    )

    # LLM parameters
    llm_max_tokens: int = Field(default=1200, validation_alias="LLM_MAX_TOKENS")
    llm_temperature: float = Field(default=0.7, validation_alias="LLM_TEMPERATURE")
    llm_timeout_seconds: float | None = Field(
        default=None, validation_alias="LLM_TIMEOUT_SECONDS"
    )

    # Resilience
    retry_max_attempts: int = Field(default=3, validation_alias="RETRY_MAX_ATTEMPTS")
    retry_initial_delay: float = Field(default=1.0, validation_alias="RETRY_INITIAL_DELAY")
    retry_max_delay: float = Field(default=10.0, validation_alias="RETRY_MAX_DELAY")
    retry_backoff_multiplier: float = Field(
        default=2.0, validation_alias="RETRY_BACKOFF_MULTIPLIER"
    )
    circuit_failure_threshold: int = Field(
        default=5, validation_alias="CIRCUIT_FAILURE_THRESHOLD"
    )
    circuit_cooldown_seconds: float = Field(
        default=60.0, validation_alias="CIRCUIT_COOLDOWN_SECONDS"
    )
    chat_rate_limit: int = Field(default=20, validation_alias="CHAT_RATE_LIMIT")
    actions_rate_limit: int = Field(default=30, validation_alias="ACTIONS_RATE_LIMIT")
    memory_rate_limit: int = Field(default=20, validation_alias="MEMORY_RATE_LIMIT")
    rate_limit_window_seconds: float = Field(
        default=60.0, validation_alias="RATE_LIMIT_WINDOW_SECONDS"
    )

    # Orchestration
    history_window: int = Field(default=50, validation_alias="HISTORY_WINDOW")
    state_change_window: int = Field(default=10, validation_alias="STATE_CHANGE_WINDOW")
    snapshot_expense_limit: int = Field(
        default=100, validation_alias="SNAPSHOT_EXPENSE_LIMIT"
    )
    quality_min_score: int = Field(default=70, validation_alias="QUALITY_MIN_SCORE")
    quality_floor: int = Field(default=40, validation_alias="QUALITY_FLOOR")
    max_reply_length: int = Field(default=1000, validation_alias="MAX_REPLY_LENGTH")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )

    def provider_timeout(self) -> float:
        """Timeout for one model call; local servers get more headroom."""
        if self.llm_timeout_seconds is not None:
            return self.llm_timeout_seconds
        defaults = {
            "lm_studio": 120.0,
            "ollama": 120.0,
            "groq": 30.0,
        }
        return defaults.get(self.llm_provider, 60.0)


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
