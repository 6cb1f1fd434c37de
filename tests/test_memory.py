"""Tests for conversation memory summaries."""

from unittest.mock import AsyncMock

import pytest
from conftest import OTHER_USER_ID, model_reply

from fiscalia.errors import ProviderError
from fiscalia.models import ConversationMemory
from fiscalia.orchestration.memory import (
    MIN_NEW_MESSAGES,
    ConversationMemoryService,
    build_memory_summary,
)
from fiscalia.resilience import RetryPolicy

HISTORY = [
    {"role": "user", "content": "Je veux suivre le contrat Terrasse. J'achète toujours chez Rona."},
    {"role": "assistant", "content": "Parfait! J'ai créé le contrat Terrasse."},
    {"role": "user", "content": "Ajoute 50$ de vis"},
    {"role": "assistant", "content": "La dépense Vis a été ajoutée."},
]


def _history(count: int) -> list[dict[str, str]]:
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"Message {i}."}
        for i in range(count)
    ]


@pytest.fixture
def memory_service(context, mock_model_client):
    return ConversationMemoryService(
        context, mock_model_client, retry_policy=RetryPolicy(max_attempts=1)
    )


class TestBuildMemorySummary:
    """Tests for the deterministic summary."""

    def test_sections(self):
        summary = build_memory_summary(HISTORY)

        assert summary.startswith("Objectif: Je veux suivre le contrat Terrasse.")
        assert "Contexte récent:\nUtilisateur: Je veux suivre" in summary
        assert "Préférences: J'achète toujours chez Rona." in summary
        assert "Actions récentes:\n- Parfait! J'ai créé le contrat Terrasse." in summary
        assert "- La dépense Vis a été ajoutée." in summary

    def test_empty_history(self):
        assert build_memory_summary([]) == ""
        assert build_memory_summary([{"role": "user", "content": "  "}]) == ""

    def test_long_messages_are_truncated(self):
        summary = build_memory_summary([{"role": "user", "content": "mot " * 100}])

        objective = summary.splitlines()[0]
        assert objective.endswith("...")
        assert len(objective) <= len("Objectif: ") + 120


class TestConversationMemoryService:
    """Tests for refresh and persistence."""

    @pytest.mark.asyncio
    async def test_refresh_persists_model_summary(self, memory_service, mock_model_client, context, user_id):
        mock_model_client.generate.return_value = model_reply("Julie suit le contrat Terrasse.")

        result = await memory_service.refresh(user_id, "conv-1", HISTORY)

        assert result.to_dict() == {
            "memorySummary": "Julie suit le contrat Terrasse.",
            "messageCount": 4,
            "updated": True,
        }
        stored = await context.get_memory(user_id, "conv-1")
        assert stored.summary == "Julie suit le contrat Terrasse."
        assert stored.message_count == 4
        assert stored.updated_at is not None

        kwargs = mock_model_client.generate.call_args.kwargs
        assert kwargs["temperature"] == 0.3
        prompt = mock_model_client.generate.call_args.args[1][0]["content"]
        assert "Utilisateur: Ajoute 50$ de vis" in prompt

    @pytest.mark.asyncio
    async def test_refresh_skipped_with_few_new_messages(self, memory_service, mock_model_client, context, user_id):
        await context.save_memory(
            ConversationMemory(user_id=user_id, summary="Résumé existant.", message_count=10)
        )

        result = await memory_service.refresh(user_id, None, _history(10 + MIN_NEW_MESSAGES - 1))

        assert result.updated is False
        assert result.summary == "Résumé existant."
        assert result.message_count == 10
        mock_model_client.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_refresh_includes_previous_summary(self, memory_service, mock_model_client, context, user_id):
        await context.save_memory(
            ConversationMemory(user_id=user_id, summary="Résumé existant.", message_count=10)
        )
        mock_model_client.generate.return_value = model_reply("Nouveau résumé.")

        result = await memory_service.refresh(user_id, None, _history(11), force=True)

        assert result.updated is True
        assert result.message_count == 11
        system_prompt = mock_model_client.generate.call_args.args[0]
        assert "RÉSUMÉ PRÉCÉDENT" in system_prompt
        assert "Résumé existant." in system_prompt

    @pytest.mark.asyncio
    async def test_provider_failure_uses_deterministic_summary(self, memory_service, mock_model_client, context, user_id):
        mock_model_client.generate = AsyncMock(side_effect=ProviderError("down"))

        result = await memory_service.refresh(user_id, "conv-1", HISTORY)

        assert result.updated is True
        assert result.source == "fallback"
        assert result.summary == build_memory_summary(HISTORY)
        assert (await context.get_memory(user_id, "conv-1")).summary == result.summary

    @pytest.mark.asyncio
    async def test_empty_history_is_not_summarised(self, memory_service, mock_model_client, user_id):
        result = await memory_service.refresh(user_id, "conv-1", [])

        assert result.to_dict() == {"memorySummary": "", "messageCount": 0, "updated": False}
        mock_model_client.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_memory_is_scoped_to_user(self, memory_service, context, user_id):
        await memory_service.refresh(user_id, "conv-1", HISTORY)

        assert await context.get_memory(OTHER_USER_ID, "conv-1") is None
