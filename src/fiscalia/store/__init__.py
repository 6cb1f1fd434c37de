"""Persistent record stores."""

from fiscalia.config import FlatSettings, get_settings
from fiscalia.store.base import RecordStore, contains_pattern, escape_like
from fiscalia.store.memory import InMemoryStore
from fiscalia.store.supabase import SupabaseStore


def create_store(settings: FlatSettings | None = None) -> RecordStore:
    """Build the store selected by ``STORE_BACKEND``."""
    settings = settings or get_settings()
    if settings.store_backend == "supabase":
        key = settings.supabase_service_role_key
        return SupabaseStore(
            supabase_url=settings.supabase_url,
            service_key=key.get_secret_value() if key else None,
            timeout=settings.db_timeout_seconds,
        )
    return InMemoryStore()


__all__ = [
    "RecordStore",
    "InMemoryStore",
    "SupabaseStore",
    "create_store",
    "contains_pattern",
    "escape_like",
]
