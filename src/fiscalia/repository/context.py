"""Per-turn financial snapshot and conversation memory persistence."""

import structlog

from fiscalia.errors import OwnershipError
from fiscalia.models import (
    CONVERSATIONS,
    PROFILES,
    ConversationMemory,
    FinancialSnapshot,
    UserProfile,
)
from fiscalia.normalise import DEFAULT_CATEGORY
from fiscalia.repository.catalog import CatalogRepository
from fiscalia.repository.financial import FinancialRepository
from fiscalia.store.base import RecordStore, utc_now_iso

logger = structlog.get_logger(__name__)


def conversation_key(user_id: str, conversation_id: str | None) -> str:
    return conversation_id or f"{user_id}:default"


class ContextRepository:
    """Read side used by the chat orchestrator, plus the memory row."""

    def __init__(
        self,
        store: RecordStore,
        financial: FinancialRepository | None = None,
        catalog: CatalogRepository | None = None,
    ):
        self.store = store
        self.financial = financial or FinancialRepository(store)
        self.catalog = catalog or CatalogRepository(store)

    async def load_profile(self, user_id: str) -> UserProfile | None:
        row = await self.store.get(PROFILES, user_id)
        return UserProfile.from_row(row) if row else None

    async def load_snapshot(self, user_id: str, expense_limit: int = 100) -> FinancialSnapshot:
        """All jobs, the most recent expenses, category names and the profile."""
        jobs = await self.financial.list_jobs(user_id)
        expenses = await self.financial.list_expenses(user_id, limit=expense_limit)
        categories = [c.name for c in await self.catalog.list_categories(user_id)]
        if not any(name.lower() == DEFAULT_CATEGORY.lower() for name in categories):
            categories.append(DEFAULT_CATEGORY)
        profile = await self.load_profile(user_id)

        logger.debug(
            "snapshot_loaded",
            user_id=user_id,
            jobs=len(jobs),
            expenses=len(expenses),
            categories=len(categories),
        )
        return FinancialSnapshot(
            jobs=jobs, expenses=expenses, categories=categories, profile=profile
        )

    async def get_memory(
        self, user_id: str, conversation_id: str | None = None
    ) -> ConversationMemory | None:
        row = await self.store.get(CONVERSATIONS, conversation_key(user_id, conversation_id))
        if row is None or row.get("user_id") != user_id:
            return None
        return ConversationMemory(
            user_id=user_id,
            conversation_id=conversation_id,
            summary=row.get("memory_summary") or "",
            message_count=int(row.get("memory_message_count") or 0),
            updated_at=row.get("memory_updated_at"),
        )

    async def save_memory(self, memory: ConversationMemory) -> ConversationMemory:
        key = conversation_key(memory.user_id, memory.conversation_id)
        memory.updated_at = utc_now_iso()
        fields = {
            "memory_summary": memory.summary,
            "memory_message_count": memory.message_count,
            "memory_updated_at": memory.updated_at,
        }
        existing = await self.store.get(CONVERSATIONS, key)
        if existing is not None and existing.get("user_id") != memory.user_id:
            raise OwnershipError(
                "Cette conversation appartient à un autre utilisateur.",
                details={"conversation_id": key},
            )
        if existing is not None:
            await self.store.update(CONVERSATIONS, key, fields)
        else:
            await self.store.insert(
                CONVERSATIONS, {"id": key, "user_id": memory.user_id, **fields}
            )
        logger.info(
            "memory_saved",
            user_id=memory.user_id,
            conversation_id=memory.conversation_id,
            length=len(memory.summary),
        )
        return memory
