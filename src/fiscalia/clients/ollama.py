"""Ollama chat client for local models."""

from typing import Any

import httpx
import structlog

from fiscalia.clients.base import (
    ModelResponse,
    connection_error,
    empty_response_error,
    provider_error,
    timeout_error,
)
from fiscalia.config import get_settings

logger = structlog.get_logger(__name__)


class OllamaClient:
    """Client for Ollama's local ``/api/chat`` endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self._base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self._model = model or settings.ollama_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature

        # Local models can be slow
        self._client = httpx.AsyncClient(timeout=timeout or settings.provider_timeout())
        self._logger = logger.bind(client="ollama", model=self._model)

    @property
    def model(self) -> str:
        return self._model

    def _convert_messages_to_ollama_format(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> list[dict[str, str]]:
        """Convert conversation history to Ollama's message format."""
        ollama_messages = [{"role": "system", "content": system_prompt}]
        for msg in messages:
            if msg.get("role") in ("user", "assistant"):
                # Ollama requires content to always be present
                ollama_messages.append({"role": msg["role"], "content": msg.get("content") or ""})
        return ollama_messages

    def _parse_response(self, response_data: dict[str, Any]) -> ModelResponse:
        """Parse Ollama response into our format."""
        message = response_data.get("message") or {}
        done_reason = response_data.get("done_reason", "")
        return ModelResponse(
            content=message.get("content") or "",
            stop_reason="max_tokens" if done_reason == "length" else "end_turn",
            usage={
                "input_tokens": response_data.get("prompt_eval_count", 0),
                "output_tokens": response_data.get("eval_count", 0),
            },
            model=response_data.get("model") or self._model,
        )

    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Generate a response from the local Ollama model."""
        self._logger.debug("generating_response", message_count=len(messages))

        payload: dict[str, Any] = {
            "model": self._model,
            "messages": self._convert_messages_to_ollama_format(system_prompt, messages),
            "stream": False,
            "options": {
                "num_predict": max_tokens or self._max_tokens,
                "temperature": temperature if temperature is not None else self._temperature,
            },
        }

        try:
            response = await self._client.post(f"{self._base_url}/api/chat", json=payload)
            response.raise_for_status()
            response_data = response.json()
        except httpx.TimeoutException as e:
            self._logger.error("api_timeout", error=str(e))
            raise timeout_error("Ollama", e) from e
        except httpx.HTTPStatusError as e:
            self._logger.error("api_error", status=e.response.status_code, error=str(e))
            raise provider_error("Ollama", e.response.status_code, e.response.text) from e
        except httpx.RequestError as e:
            self._logger.error("connection_error", error=str(e))
            raise connection_error("Ollama", e) from e

        parsed = self._parse_response(response_data)
        if not parsed.content.strip():
            self._logger.error("empty_response", stop_reason=parsed.stop_reason)
            raise empty_response_error("Ollama", self._model)

        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
