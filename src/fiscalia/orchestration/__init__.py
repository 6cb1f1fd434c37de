"""Chat orchestration: aliases, prompts, interpretation and action execution."""

from fiscalia.orchestration.actions import (
    ActionName,
    ModelAction,
    sanitize_action,
    sanitize_actions,
    sanitize_actions_lenient,
)
from fiscalia.orchestration.aliases import AliasTable
from fiscalia.orchestration.chat import ChatOrchestrator, ChatRequest, ChatResponse
from fiscalia.orchestration.executor import (
    ActionExecutor,
    ExecutionResult,
    LogEntry,
    TurnState,
)
from fiscalia.orchestration.interpreter import Interpretation, interpret_response
from fiscalia.orchestration.memory import ConversationMemoryService, build_memory_summary
from fiscalia.orchestration.prompts import PromptContext, TemporalContext, compose_system_prompt
from fiscalia.orchestration.receipts import ReceiptData, bind_receipts, extract_receipts
from fiscalia.orchestration.state_changes import StateChange, extract_state_changes

__all__ = [
    # Actions
    "ActionName",
    "ModelAction",
    "sanitize_action",
    "sanitize_actions",
    "sanitize_actions_lenient",
    # Per-turn pipeline
    "AliasTable",
    "StateChange",
    "extract_state_changes",
    "ReceiptData",
    "extract_receipts",
    "bind_receipts",
    "PromptContext",
    "TemporalContext",
    "compose_system_prompt",
    "Interpretation",
    "interpret_response",
    # Execution
    "ActionExecutor",
    "ExecutionResult",
    "LogEntry",
    "TurnState",
    # Services
    "ChatOrchestrator",
    "ChatRequest",
    "ChatResponse",
    "ConversationMemoryService",
    "build_memory_summary",
]
