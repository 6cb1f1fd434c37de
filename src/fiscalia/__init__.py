"""Fiscalia - chat orchestration core for small-business financial records."""

__version__ = "0.1.0"

from fiscalia.clients import ClaudeClient, OllamaClient, OpenAIClient, create_model_client
from fiscalia.config import configure_logging, get_settings
from fiscalia.errors import FiscaliaError
from fiscalia.orchestration import (
    ActionExecutor,
    ChatOrchestrator,
    ChatRequest,
    ConversationMemoryService,
)
from fiscalia.repository import CatalogRepository, ContextRepository, FinancialRepository
from fiscalia.store import InMemoryStore, SupabaseStore, create_store

__all__ = [
    # Version
    "__version__",
    # Orchestration
    "ChatOrchestrator",
    "ChatRequest",
    "ActionExecutor",
    "ConversationMemoryService",
    # Repositories & stores
    "FinancialRepository",
    "CatalogRepository",
    "ContextRepository",
    "InMemoryStore",
    "SupabaseStore",
    "create_store",
    # LLM Clients
    "ClaudeClient",
    "OpenAIClient",
    "OllamaClient",
    "create_model_client",
    # Config
    "configure_logging",
    "get_settings",
    "FiscaliaError",
]
