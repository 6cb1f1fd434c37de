"""Model client implementations for the chat orchestrator."""

from pydantic import SecretStr

from fiscalia.clients.base import ModelClient, ModelResponse
from fiscalia.clients.claude import ClaudeClient
from fiscalia.clients.ollama import OllamaClient
from fiscalia.clients.openai_client import OpenAIClient
from fiscalia.config.settings import FlatSettings, get_settings


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def create_model_client(settings: FlatSettings | None = None) -> ModelClient:
    """Build the client for the configured ``llm_provider``."""
    settings = settings or get_settings()
    provider = settings.llm_provider
    if provider == "anthropic":
        return ClaudeClient(
            api_key=_secret(settings.anthropic_api_key),
            model=settings.claude_model,
            timeout=settings.provider_timeout(),
        )
    if provider == "ollama":
        return OllamaClient(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            timeout=settings.provider_timeout(),
        )
    keys = {
        "openai": settings.openai_api_key,
        "openrouter": settings.openrouter_api_key,
        "groq": settings.groq_api_key,
    }
    base_urls = {
        "openrouter": settings.openrouter_base_url,
        "groq": settings.groq_base_url,
        "lm_studio": settings.lm_studio_url,
    }
    return OpenAIClient(
        provider=provider,
        api_key=_secret(keys.get(provider)),
        base_url=base_urls.get(provider),
        model=settings.ai_model,
        timeout=settings.provider_timeout(),
    )


__all__ = [
    "ModelClient",
    "ModelResponse",
    "ClaudeClient",
    "OllamaClient",
    "OpenAIClient",
    "create_model_client",
]
