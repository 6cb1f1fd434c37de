"""Conversation memory: a short French summary carried across sessions.

The summary is produced by the model when it answers, and by
``build_memory_summary`` otherwise. Only the context layer reads and writes
it; the action executor never touches it.
"""

import re
from dataclasses import dataclass
from typing import Any

import structlog

from fiscalia.clients.base import ModelClient
from fiscalia.errors import FiscaliaError
from fiscalia.models import ConversationMemory
from fiscalia.repository.context import ContextRepository
from fiscalia.resilience import CircuitBreaker, RetryPolicy, resilient_call

logger = structlog.get_logger(__name__)

MIN_NEW_MESSAGES = 5
SUMMARY_MESSAGE_WINDOW = 20
SUMMARY_TEMPERATURE = 0.3
SUMMARY_MAX_TOKENS = 300

_PREFERENCE_WORDS = ("toujours", "habituellement", "généralement", "souvent", "préfère", "aime")
_ACTION_WORDS = ("créé", "ajouté", "modifié", "supprimé", "mis à jour")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

SUMMARY_SYSTEM_PROMPT = """Tu analyses des conversations financières et tu crées des résumés concis.

TÂCHE: Résume cette conversation en conservant:
1. Les informations financières importantes (montants exacts, noms de contrats et de dépenses)
2. Les préférences et décisions de l'utilisateur
3. Le contexte en cours et les entités récemment mentionnées
4. Les questions non résolues ou actions en attente

FORMAT:
- 3 à 5 phrases maximum
- Français conversationnel
- Noms exacts des contrats et dépenses créés ou modifiés
- Ignore les salutations et politesses"""


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def _content(message: dict[str, Any]) -> str:
    return str(message.get("content") or "").strip()


def build_memory_summary(history: list[dict[str, Any]]) -> str:
    """Deterministic summary used when the model is unavailable."""
    messages = [m for m in history if _content(m)]
    if not messages:
        return ""

    sections: list[str] = []
    first_user = next((m for m in messages if m.get("role") == "user"), None)
    if first_user is not None:
        sections.append(f"Objectif: {_truncate(_content(first_user), 120)}")

    recent = [
        f"{'Utilisateur' if m.get('role') == 'user' else 'Fiscalia'}: {_truncate(_content(m), 80)}"
        for m in messages[-6:]
    ]
    sections.append("Contexte récent:\n" + "\n".join(recent))

    preferences: list[str] = []
    for message in messages:
        if message.get("role") != "user":
            continue
        for sentence in _SENTENCE_SPLIT_RE.split(_content(message)):
            lowered = sentence.lower()
            if any(word in lowered for word in _PREFERENCE_WORDS) and sentence not in preferences:
                preferences.append(sentence)
    if preferences:
        sections.append("Préférences: " + " ".join(_truncate(p, 120) for p in preferences[-3:]))

    actions = [
        _truncate(_content(m), 100)
        for m in messages
        if m.get("role") == "assistant"
        and any(word in _content(m).lower() for word in _ACTION_WORDS)
    ]
    if actions:
        sections.append("Actions récentes:\n" + "\n".join(f"- {a}" for a in actions[-5:]))

    return "\n".join(sections)


def _transcript(history: list[dict[str, Any]]) -> str:
    return "\n".join(
        f"{'Utilisateur' if m.get('role') == 'user' else 'Fiscalia'}: {_content(m)}"
        for m in history[-SUMMARY_MESSAGE_WINDOW:]
        if _content(m)
    )


@dataclass
class MemoryRefresh:
    summary: str
    message_count: int
    updated: bool
    source: str = "model"

    def to_dict(self) -> dict[str, Any]:
        return {
            "memorySummary": self.summary,
            "messageCount": self.message_count,
            "updated": self.updated,
        }


class ConversationMemoryService:
    """Refreshes and persists the memory row of one conversation."""

    def __init__(
        self,
        context: ContextRepository,
        client: ModelClient,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
    ):
        self.context = context
        self.client = client
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.timeout_seconds = timeout_seconds

    async def summarise(self, history: list[dict[str, Any]], previous: str | None = None) -> tuple[str, str]:
        """Model summary of ``history``; deterministic summary on provider failure.

        Returns the summary and its source (``model`` or ``fallback``).
        """
        system_prompt = SUMMARY_SYSTEM_PROMPT
        if previous:
            system_prompt += f"\n\nRÉSUMÉ PRÉCÉDENT (à mettre à jour avec les nouvelles infos):\n{previous}"
        user_prompt = (
            f"Voici la conversation récente à résumer:\n\n{_transcript(history)}\n\n"
            "Résume cette conversation en conservant les informations essentielles."
        )

        try:
            response = await resilient_call(
                lambda: self.client.generate(
                    system_prompt,
                    [{"role": "user", "content": user_prompt}],
                    temperature=SUMMARY_TEMPERATURE,
                    max_tokens=SUMMARY_MAX_TOKENS,
                ),
                breaker=self.breaker,
                policy=self.retry_policy,
                timeout_seconds=self.timeout_seconds,
                operation_name="memory_summary",
            )
        except FiscaliaError as e:
            logger.warning("memory_summary_fallback", code=e.code, error=e.message)
            return build_memory_summary(history), "fallback"

        summary = response.content.strip()
        if not summary:
            return build_memory_summary(history), "fallback"
        return summary, "model"

    async def refresh(
        self,
        user_id: str,
        conversation_id: str | None,
        history: list[dict[str, Any]],
        force: bool = False,
    ) -> MemoryRefresh:
        """Re-summarise when enough new messages arrived (or ``force``) and persist."""
        stored = await self.context.get_memory(user_id, conversation_id)
        message_count = len(history)

        if stored is not None and stored.summary and not force:
            new_messages = message_count - stored.message_count
            if new_messages < MIN_NEW_MESSAGES:
                logger.info(
                    "memory_refresh_skipped",
                    user_id=user_id,
                    conversation_id=conversation_id,
                    new_messages=new_messages,
                )
                return MemoryRefresh(
                    summary=stored.summary,
                    message_count=stored.message_count,
                    updated=False,
                    source="stored",
                )

        if not history:
            summary = stored.summary if stored else ""
            return MemoryRefresh(summary=summary, message_count=0, updated=False, source="stored")

        summary, source = await self.summarise(history, stored.summary if stored else None)
        await self.context.save_memory(
            ConversationMemory(
                user_id=user_id,
                conversation_id=conversation_id,
                summary=summary,
                message_count=message_count,
            )
        )
        logger.info(
            "memory_refreshed",
            user_id=user_id,
            conversation_id=conversation_id,
            source=source,
            message_count=message_count,
        )
        return MemoryRefresh(
            summary=summary, message_count=message_count, updated=True, source=source
        )
