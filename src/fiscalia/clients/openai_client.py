"""OpenAI-compatible chat client (OpenAI, OpenRouter, Groq, LM Studio)."""

from typing import Any, Literal

import openai
import structlog

from fiscalia.clients.base import (
    ModelResponse,
    connection_error,
    embed_system_prompt,
    empty_response_error,
    provider_error,
    timeout_error,
)
from fiscalia.config import get_settings
from fiscalia.errors import ProviderError

logger = structlog.get_logger(__name__)

OpenAIProvider = Literal["openai", "openrouter", "groq", "lm_studio"]

PROVIDER_LABELS: dict[str, str] = {
    "openai": "OpenAI",
    "openrouter": "OpenRouter",
    "groq": "Groq",
    "lm_studio": "LM Studio",
}

# LM Studio ignores the key but the SDK requires one.
LM_STUDIO_API_KEY = "lm-studio"


class OpenAIClient:
    """Client for OpenAI's chat completions API and compatible servers.

    The provider selects base URL, key and message layout: LM Studio gets the
    system prompt embedded in the first user turn with strict alternation,
    OpenRouter gets its attribution headers.
    """

    def __init__(
        self,
        provider: OpenAIProvider = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self._provider = provider
        self._label = PROVIDER_LABELS[provider]
        self._api_key = api_key or self._configured_key(provider)
        self._base_url = base_url or {
            "openrouter": settings.openrouter_base_url,
            "groq": settings.groq_base_url,
            "lm_studio": settings.lm_studio_url,
        }.get(provider)
        self._model = model or settings.ai_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature

        client_kwargs: dict[str, Any] = {
            "api_key": self._api_key,
            "timeout": timeout or settings.provider_timeout(),
            # Retries are owned by the orchestrator's retry policy.
            "max_retries": 0,
        }
        if self._base_url:
            client_kwargs["base_url"] = self._base_url
        if provider == "openrouter":
            client_kwargs["default_headers"] = {
                "HTTP-Referer": settings.ai_proxy_referer,
                "X-Title": "Fiscalia",
            }

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._logger = logger.bind(client=provider, model=self._model)

    @staticmethod
    def _configured_key(provider: OpenAIProvider) -> str:
        if provider == "lm_studio":
            return LM_STUDIO_API_KEY
        settings = get_settings()
        secret = {
            "openai": settings.openai_api_key,
            "openrouter": settings.openrouter_api_key,
            "groq": settings.groq_api_key,
        }[provider]
        if secret is None:
            raise ProviderError(
                f"Clé API manquante pour {PROVIDER_LABELS[provider]}.",
                status_code=500,
                details={"provider": provider},
            )
        return secret.get_secret_value()

    @property
    def model(self) -> str:
        return self._model

    def _convert_messages_to_openai_format(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> list[dict[str, str]]:
        """Convert conversation history to OpenAI's message format."""
        if self._provider == "lm_studio":
            return embed_system_prompt(system_prompt, messages)

        openai_messages = [{"role": "system", "content": system_prompt}]
        for msg in messages:
            if msg.get("role") in ("user", "assistant") and msg.get("content"):
                openai_messages.append({"role": msg["role"], "content": str(msg["content"])})
        return openai_messages

    def _parse_response(self, response: Any) -> ModelResponse:
        """Parse a chat completion into our format."""
        choice = response.choices[0] if response.choices else None
        content = (choice.message.content if choice and choice.message else None) or ""

        stop_reason_map = {
            "stop": "end_turn",
            "length": "max_tokens",
            "content_filter": "content_filter",
        }
        finish_reason = choice.finish_reason if choice else None
        stop_reason = stop_reason_map.get(finish_reason or "stop", "end_turn")

        return ModelResponse(
            content=content,
            stop_reason=stop_reason,
            usage={
                "input_tokens": response.usage.prompt_tokens if response.usage else 0,
                "output_tokens": response.usage.completion_tokens if response.usage else 0,
            },
            model=getattr(response, "model", None) or self._model,
        )

    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Generate one completion.

        Args:
            system_prompt: Instruction block for this turn.
            messages: Conversation, oldest first, ending with the user turn.
            temperature: Overrides the configured temperature.
            max_tokens: Overrides the configured completion budget.

        Returns:
            ModelResponse with content and usage info.
        """
        self._logger.debug("generating_response", message_count=len(messages))

        openai_messages = self._convert_messages_to_openai_format(system_prompt, messages)

        # GPT-5+ models use max_completion_tokens instead of max_tokens
        budget = max_tokens or self._max_tokens
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": openai_messages,
            "temperature": temperature if temperature is not None else self._temperature,
        }
        if self._provider == "openai" and self._model.startswith(("gpt-5", "o3")):
            kwargs["max_completion_tokens"] = budget
        else:
            kwargs["max_tokens"] = budget

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as e:
            self._logger.error("api_timeout", error=str(e))
            raise timeout_error(self._label, e) from e
        except openai.APIConnectionError as e:
            self._logger.error("connection_error", error=str(e))
            raise connection_error(self._label, e) from e
        except openai.APIStatusError as e:
            self._logger.error("api_error", status=e.status_code, error=str(e))
            raise provider_error(self._label, e.status_code, e.message) from e

        parsed = self._parse_response(response)
        if not parsed.content.strip():
            self._logger.error("empty_response", stop_reason=parsed.stop_reason)
            raise empty_response_error(self._label, self._model)

        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def close(self) -> None:
        await self._client.close()
