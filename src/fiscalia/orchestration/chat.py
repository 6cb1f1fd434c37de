"""Chat orchestrator: one user message in, one reply plus actions out.

Per turn: rate limit, snapshot, memory, receipts, aliases, state changes,
system prompt, resilient model call, interpretation, alias restoration and
receipt binding. Actions are returned to the caller for confirmation unless
``auto_execute`` is set.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from fiscalia.clients.base import ModelClient
from fiscalia.config.settings import FlatSettings, get_settings
from fiscalia.errors import ActionExecutionError, ValidationError
from fiscalia.normalise import normalize_nullable_string
from fiscalia.orchestration.actions import ModelAction
from fiscalia.orchestration.aliases import AliasTable
from fiscalia.orchestration.executor import ActionExecutor, ExecutionResult
from fiscalia.orchestration.interpreter import (
    fallback_context,
    fallback_response,
    interpret_response,
)
from fiscalia.orchestration.prompts import PromptContext, TemporalContext, compose_system_prompt
from fiscalia.orchestration.receipts import ReceiptData, bind_receipts, extract_receipts
from fiscalia.orchestration.state_changes import extract_state_changes
from fiscalia.repository.context import ContextRepository
from fiscalia.resilience import CircuitBreaker, RateLimiter, RetryPolicy, resilient_call

logger = structlog.get_logger(__name__)

CHAT_ENDPOINT = "chat"
MAX_PROMPT_LENGTH = 4000
RECEIPT_ONLY_PROMPT = "Enregistre la dépense de ce reçu."


def clean_history(raw: Any) -> list[dict[str, str]]:
    if not isinstance(raw, list):
        return []
    history = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if role in ("user", "assistant") and isinstance(content, str) and content.strip():
            history.append({"role": role, "content": content.strip()})
    return history


@dataclass
class ChatRequest:
    prompt: str
    history: list[dict[str, str]] = field(default_factory=list)
    conversation_id: str | None = None
    conversation_memory: str | None = None
    receipts: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "ChatRequest":
        """Validate ``{prompt, history, context?}`` from the chat endpoint."""
        if not isinstance(payload, dict):
            raise ValidationError("Corps JSON invalide.")
        prompt = normalize_nullable_string(payload.get("prompt"))
        if not prompt:
            raise ValidationError("Le message est requis.")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError(
                f"Le message est trop long (maximum {MAX_PROMPT_LENGTH} caractères)."
            )
        context = payload.get("context") if isinstance(payload.get("context"), dict) else {}
        receipts = context.get("receipts")
        return cls(
            prompt=prompt,
            history=clean_history(payload.get("history")),
            conversation_id=normalize_nullable_string(context.get("conversationId")),
            conversation_memory=normalize_nullable_string(context.get("conversationMemory")),
            receipts=[r for r in receipts if isinstance(r, dict)] if isinstance(receipts, list) else [],
        )


@dataclass
class ChatResponse:
    text: str
    correlation_id: str
    actions: list[ModelAction] = field(default_factory=list)
    execution: ExecutionResult | None = None
    score: int = 0
    source: str = "model"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "text": self.text,
            "actions": [action.to_dict() for action in self.actions],
            "correlationId": self.correlation_id,
        }
        if self.execution is not None:
            result["execution"] = self.execution.to_dict()
        return result


class ChatOrchestrator:
    """Runs chat turns for any user; holds no per-turn state."""

    def __init__(
        self,
        context: ContextRepository,
        client: ModelClient,
        executor: ActionExecutor | None = None,
        rate_limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: FlatSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.context = context
        self.client = client
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def _memory_text(self, user_id: str, request: ChatRequest) -> str | None:
        stored = await self.context.get_memory(user_id, request.conversation_id)
        if stored is not None and stored.summary:
            return stored.summary
        return request.conversation_memory

    async def handle_turn(
        self,
        user_id: str,
        request: ChatRequest,
        correlation_id: str | None = None,
        auto_execute: bool = False,
    ) -> ChatResponse:
        """Answer one user message."""
        correlation_id = correlation_id or str(uuid.uuid4())
        settings = self.settings
        log = logger.bind(user_id=user_id, correlation_id=correlation_id)

        if self.rate_limiter is not None:
            self.rate_limiter.check(user_id, CHAT_ENDPOINT)

        snapshot = await self.context.load_snapshot(
            user_id, expense_limit=settings.snapshot_expense_limit
        )
        memory = await self._memory_text(user_id, request)

        prompt, inline_receipts = extract_receipts(request.prompt)
        receipts = [ReceiptData.from_dict(r) for r in request.receipts] + inline_receipts
        if not prompt and receipts:
            prompt = RECEIPT_ONLY_PROMPT

        aliases = AliasTable.build(snapshot.jobs, snapshot.expenses)
        history = request.history[-settings.history_window :] if settings.history_window > 0 else []
        state_changes = extract_state_changes(
            history, snapshot, aliases, window=settings.state_change_window
        )

        system_prompt = compose_system_prompt(
            PromptContext(
                snapshot=snapshot,
                aliases=aliases,
                temporal=TemporalContext.from_datetime(self._clock()),
                memory=memory,
                state_changes=state_changes,
                receipts=receipts,
            )
        )
        messages = [
            {"role": message["role"], "content": aliases.encode(message["content"])}
            for message in history
        ]
        messages.append({"role": "user", "content": aliases.encode(prompt)})

        log.info(
            "chat_turn_started",
            history=len(history),
            aliases=len(aliases),
            receipts=len(receipts),
            state_changes=len(state_changes),
        )
        response = await resilient_call(
            lambda: self.client.generate(system_prompt, messages),
            breaker=self.breaker,
            policy=self.retry_policy,
            timeout_seconds=settings.provider_timeout(),
            operation_name="chat_completion",
        )

        interpretation = interpret_response(
            response.content,
            prompt=prompt,
            min_score=settings.quality_min_score,
            floor=settings.quality_floor,
            max_length=settings.max_reply_length,
        )

        text = aliases.strip_tokens(aliases.decode(interpretation.text))
        if len(text) < 3:
            text = fallback_response(fallback_context(prompt, interpretation.actions))

        actions: list[ModelAction] = []
        for action in interpretation.actions:
            confirmation = action.confirmation_message
            if confirmation:
                confirmation = aliases.strip_tokens(aliases.decode(confirmation)) or None
            actions.append(
                ModelAction(
                    name=action.name,
                    data=aliases.restore_data(action.data),
                    confirmation_message=confirmation,
                )
            )
        actions = bind_receipts(actions, receipts)

        execution = None
        if auto_execute and actions and self.executor is not None:
            try:
                execution = await self.executor.execute(user_id, actions)
            except ActionExecutionError as e:
                execution = ExecutionResult.from_error(e)

        log.info(
            "chat_turn_completed",
            score=interpretation.score,
            source=interpretation.source,
            actions=[action.name.value for action in actions],
            executed=execution is not None,
        )
        return ChatResponse(
            text=text,
            correlation_id=correlation_id,
            actions=actions,
            execution=execution,
            score=interpretation.score,
            source=interpretation.source,
        )
