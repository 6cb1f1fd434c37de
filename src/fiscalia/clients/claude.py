"""Claude (Anthropic) chat client."""

from typing import Any

import anthropic
import structlog

from fiscalia.clients.base import (
    ModelResponse,
    connection_error,
    empty_response_error,
    merge_consecutive_roles,
    provider_error,
    timeout_error,
)
from fiscalia.config import get_settings
from fiscalia.errors import ProviderError

logger = structlog.get_logger(__name__)


class ClaudeClient:
    """Client for Anthropic's Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        if api_key is None and settings.anthropic_api_key is None:
            raise ProviderError(
                "Clé API manquante pour Anthropic.",
                status_code=500,
                details={"provider": "anthropic"},
            )
        self._api_key = api_key or settings.anthropic_api_key.get_secret_value()
        self._model = model or settings.claude_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature

        self._client = anthropic.AsyncAnthropic(
            api_key=self._api_key,
            timeout=timeout or settings.provider_timeout(),
            max_retries=0,
        )
        self._logger = logger.bind(client="claude", model=self._model)

    @property
    def model(self) -> str:
        return self._model

    def _convert_messages_to_anthropic_format(
        self, messages: list[dict[str, Any]]
    ) -> list[dict[str, str]]:
        """Anthropic requires a leading user turn and strict alternation."""
        return merge_consecutive_roles(messages)

    def _parse_response(self, response: anthropic.types.Message) -> ModelResponse:
        """Parse Anthropic response into our format."""
        content = "".join(block.text for block in response.content if block.type == "text")
        return ModelResponse(
            content=content,
            stop_reason=response.stop_reason or "end_turn",
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            model=response.model,
        )

    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Generate a response from Claude."""
        self._logger.debug("generating_response", message_count=len(messages))

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens or self._max_tokens,
            "system": system_prompt,
            "messages": self._convert_messages_to_anthropic_format(messages),
            "temperature": temperature if temperature is not None else self._temperature,
        }

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APITimeoutError as e:
            self._logger.error("api_timeout", error=str(e))
            raise timeout_error("Anthropic", e) from e
        except anthropic.APIConnectionError as e:
            self._logger.error("connection_error", error=str(e))
            raise connection_error("Anthropic", e) from e
        except anthropic.APIStatusError as e:
            self._logger.error("api_error", status=e.status_code, error=str(e))
            raise provider_error("Anthropic", e.status_code, e.message) from e

        parsed = self._parse_response(response)
        if not parsed.content.strip():
            self._logger.error("empty_response", stop_reason=parsed.stop_reason)
            raise empty_response_error("Anthropic", self._model)

        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def close(self) -> None:
        await self._client.close()
