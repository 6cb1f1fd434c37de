"""Tests for the model provider clients."""

from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest

from fiscalia.clients import ClaudeClient, OllamaClient, OpenAIClient, create_model_client
from fiscalia.clients.base import (
    CREDITS_MESSAGE,
    EMPTY_RESPONSE_MESSAGE,
    QUOTA_MESSAGE,
    TIMEOUT_MESSAGE,
    embed_system_prompt,
    merge_consecutive_roles,
    provider_error,
)
from fiscalia.config import FlatSettings
from fiscalia.errors import ProviderError, ProviderTimeoutError

REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat")


def _status_error(module, status: int, message: str):
    return module.APIStatusError(
        message, response=httpx.Response(status, request=REQUEST), body=None
    )


class TestMessageHelpers:
    """Tests for role alternation helpers."""

    def test_merge_consecutive_roles(self):
        messages = [
            {"role": "assistant", "content": "Salut!"},
            {"role": "user", "content": "Ajoute"},
            {"role": "user", "content": "une dépense"},
            {"role": "system", "content": "ignored"},
            {"role": "assistant", "content": "Ok."},
            {"role": "assistant", "content": "Autre."},
        ]

        assert merge_consecutive_roles(messages) == [
            {"role": "user", "content": "Ajoute\n\nune dépense"},
            {"role": "assistant", "content": "Ok."},
        ]

    def test_embed_system_prompt_in_first_user_turn(self):
        messages = [{"role": "user", "content": "Bonjour"}]

        assert embed_system_prompt("SYS", messages) == [
            {"role": "user", "content": "SYS\n\nBonjour"}
        ]

    def test_embed_system_prompt_before_leading_assistant(self):
        messages = [
            {"role": "assistant", "content": "Salut!"},
            {"role": "user", "content": "Bonjour"},
        ]

        converted = embed_system_prompt("SYS", messages)

        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert converted[0]["content"] == "SYS"

    def test_embed_system_prompt_without_history(self):
        assert embed_system_prompt("SYS", []) == [{"role": "user", "content": "SYS"}]


class TestProviderErrors:
    """Tests for provider failure mapping."""

    def test_credits(self):
        assert provider_error("OpenRouter", 402, "Insufficient credits").message == CREDITS_MESSAGE

    @pytest.mark.parametrize(
        "status,message", [(429, "Too many"), (400, "Rate limit reached"), (400, "quota exceeded")]
    )
    def test_quota(self, status, message):
        assert provider_error("OpenAI", status, message).message == QUOTA_MESSAGE

    def test_auth_and_missing_model(self):
        assert "clé API" in provider_error("Groq", 401, "Unauthorized").message
        assert "Modèle introuvable chez Groq" in provider_error("Groq", 404, "no model").message

    def test_server_errors_are_retryable(self):
        error = provider_error("Ollama", 503, "overloaded")

        assert error.retryable is True
        assert error.details["status"] == 503

    def test_other_errors(self):
        error = provider_error("OpenAI", 400, "bad request")

        assert error.message == "Erreur du fournisseur IA."
        assert error.retryable is False


class TestOllamaClient:
    """Tests for OllamaClient."""

    def test_client_initialization_with_custom_params(self):
        client = OllamaClient(
            base_url="http://localhost:9999/",
            model="llama3:8b",
            max_tokens=2048,
            temperature=0.5,
        )

        assert client._base_url == "http://localhost:9999"
        assert client._model == "llama3:8b"
        assert client._max_tokens == 2048
        assert client._temperature == 0.5

    def test_convert_messages(self):
        client = OllamaClient()

        converted = client._convert_messages_to_ollama_format(
            "System prompt", [{"role": "user", "content": "Hello"}, {"role": "tool", "content": "x"}]
        )

        assert converted == [
            {"role": "system", "content": "System prompt"},
            {"role": "user", "content": "Hello"},
        ]

    def test_parse_response(self):
        client = OllamaClient(model="qwen3:8b")

        parsed = client._parse_response(
            {
                "message": {"content": '{"text": "Salut."}'},
                "done_reason": "length",
                "prompt_eval_count": 100,
                "eval_count": 50,
            }
        )

        assert parsed.content == '{"text": "Salut."}'
        assert parsed.stop_reason == "max_tokens"
        assert parsed.usage == {"input_tokens": 100, "output_tokens": 50}
        assert parsed.model == "qwen3:8b"

    @pytest.mark.asyncio
    async def test_generate_posts_chat_request(self):
        client = OllamaClient(base_url="http://localhost:11434", model="qwen3:8b")
        mock_response = MagicMock()
        mock_response.raise_for_status = MagicMock()
        mock_response.json.return_value = {"message": {"content": "Bonjour!"}, "done_reason": "stop"}
        client._client.post = AsyncMock(return_value=mock_response)

        response = await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert response.content == "Bonjour!"
        assert response.stop_reason == "end_turn"
        url = client._client.post.call_args.args[0]
        payload = client._client.post.call_args.kwargs["json"]
        assert url == "http://localhost:11434/api/chat"
        assert payload["stream"] is False
        assert payload["model"] == "qwen3:8b"

    @pytest.mark.asyncio
    async def test_empty_response_raises(self):
        client = OllamaClient()
        mock_response = MagicMock()
        mock_response.json.return_value = {"message": {"content": "  "}}
        client._client.post = AsyncMock(return_value=mock_response)

        with pytest.raises(ProviderError) as exc_info:
            await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert exc_info.value.message == EMPTY_RESPONSE_MESSAGE

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        client = OllamaClient()
        client._client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ProviderError) as exc_info:
            await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert exc_info.value.retryable is True
        assert exc_info.value.code == "ERR_4000"

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = OllamaClient()
        client._client.post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert exc_info.value.message == TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_close(self):
        client = OllamaClient()
        client._client = AsyncMock()

        await client.close()

        client._client.aclose.assert_awaited_once()


class TestOpenAIClient:
    """Tests for OpenAIClient."""

    def test_client_initialization(self):
        client = OpenAIClient(provider="openai", api_key="sk-custom", model="gpt-4o-mini")

        assert client._api_key == "sk-custom"
        assert client._model == "gpt-4o-mini"
        assert client._base_url is None

    def test_openrouter_uses_configured_base_url(self):
        client = OpenAIClient(provider="openrouter")

        assert client._base_url == "https://openrouter.ai/api/v1"
        assert client._api_key == "sk-or-test"

    def test_missing_key_raises(self, monkeypatch):
        client_settings = FlatSettings(GROQ_API_KEY=None)
        monkeypatch.setattr(
            "fiscalia.clients.openai_client.get_settings", lambda: client_settings
        )

        with pytest.raises(ProviderError, match="Groq"):
            OpenAIClient(provider="groq")

    def test_lm_studio_embeds_system_prompt(self):
        client = OpenAIClient(provider="lm_studio")

        converted = client._convert_messages_to_openai_format(
            "SYS", [{"role": "user", "content": "Salut"}]
        )

        assert client._api_key == "lm-studio"
        assert converted == [{"role": "user", "content": "SYS\n\nSalut"}]

    def test_system_role_for_hosted_providers(self):
        client = OpenAIClient(provider="openai")

        converted = client._convert_messages_to_openai_format(
            "SYS", [{"role": "user", "content": "Salut"}, {"role": "assistant", "content": ""}]
        )

        assert converted == [
            {"role": "system", "content": "SYS"},
            {"role": "user", "content": "Salut"},
        ]

    @pytest.mark.asyncio
    async def test_generate(self):
        client = OpenAIClient(provider="openai", model="gpt-4o-mini")
        completion = MagicMock()
        completion.choices = [MagicMock()]
        completion.choices[0].message.content = '{"text": "Bonjour!"}'
        completion.choices[0].finish_reason = "length"
        completion.usage.prompt_tokens = 12
        completion.usage.completion_tokens = 7
        completion.model = "gpt-4o-mini"
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(return_value=completion)

        response = await client.generate("SYS", [{"role": "user", "content": "Salut"}], max_tokens=50)

        assert response.content == '{"text": "Bonjour!"}'
        assert response.stop_reason == "max_tokens"
        assert response.usage == {"input_tokens": 12, "output_tokens": 7}
        kwargs = client._client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 50
        assert "max_completion_tokens" not in kwargs

    @pytest.mark.asyncio
    async def test_newer_models_use_max_completion_tokens(self):
        client = OpenAIClient(provider="openai", model="gpt-5-mini")
        completion = MagicMock()
        completion.choices = [MagicMock()]
        completion.choices[0].message.content = "Salut."
        completion.choices[0].finish_reason = "stop"
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(return_value=completion)

        await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        kwargs = client._client.chat.completions.create.call_args.kwargs
        assert "max_completion_tokens" in kwargs
        assert "max_tokens" not in kwargs

    @pytest.mark.asyncio
    async def test_status_error_is_mapped(self):
        client = OpenAIClient(provider="openai")
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            side_effect=_status_error(openai, 429, "Rate limit reached")
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert exc_info.value.message == QUOTA_MESSAGE

    @pytest.mark.asyncio
    async def test_connection_error_is_mapped(self):
        client = OpenAIClient(provider="openai")
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=REQUEST)
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert exc_info.value.retryable is True


class TestClaudeClient:
    """Tests for ClaudeClient."""

    def test_client_initialization_with_defaults(self):
        client = ClaudeClient()

        assert client._api_key == "sk-ant-test"
        assert client._model == "claude-haiku-4-5"
        assert client._max_tokens > 0

    def test_client_initialization_with_custom_params(self):
        client = ClaudeClient(
            api_key="custom-key",
            model="claude-sonnet-4-5",
            max_tokens=2048,
            temperature=0.5,
        )

        assert client._api_key == "custom-key"
        assert client._model == "claude-sonnet-4-5"
        assert client._max_tokens == 2048
        assert client._temperature == 0.5

    @pytest.mark.asyncio
    async def test_generate(self):
        client = ClaudeClient()
        block = MagicMock(type="text", text="Bonjour!")
        message = MagicMock()
        message.content = [block]
        message.stop_reason = "end_turn"
        message.usage.input_tokens = 10
        message.usage.output_tokens = 3
        message.model = "claude-haiku-4-5"
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(return_value=message)

        response = await client.generate(
            "SYS",
            [{"role": "assistant", "content": "Salut!"}, {"role": "user", "content": "Bonjour"}],
        )

        assert response.content == "Bonjour!"
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "SYS"
        assert kwargs["messages"] == [{"role": "user", "content": "Bonjour"}]

    @pytest.mark.asyncio
    async def test_status_error_is_mapped(self):
        client = ClaudeClient()
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(
            side_effect=_status_error(anthropic, 529, "Overloaded")
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.generate("SYS", [{"role": "user", "content": "Salut"}])

        assert exc_info.value.retryable is True


class TestCreateModelClient:
    """Tests for provider selection."""

    @pytest.mark.parametrize(
        "provider,client_type",
        [
            ("anthropic", ClaudeClient),
            ("ollama", OllamaClient),
            ("openai", OpenAIClient),
            ("openrouter", OpenAIClient),
            ("lm_studio", OpenAIClient),
        ],
    )
    def test_selects_client(self, provider, client_type):
        client = create_model_client(FlatSettings(LLM_PROVIDER=provider))

        assert isinstance(client, client_type)

    def test_passes_provider_timeout(self):
        client = create_model_client(FlatSettings(LLM_PROVIDER="ollama", OLLAMA_MODEL="mistral"))

        assert client.model == "mistral"
        assert client._client.timeout.read == 120.0
