"""Abstract async record store used by the entity repository."""

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def contains_pattern(value: str) -> str:
    """Case-insensitive substring pattern for ``select(ilike=...)``."""
    return f"%{escape_like(value)}%"


class RecordStore(ABC):
    """Row-level access to the ``jobs``, ``expenses``, ``categories``,
    ``notifications``, ``conversations`` and ``profiles`` tables.

    Every row carries an ``id``. Each individual write is atomic; there are
    no multi-row transactions.
    """

    @abstractmethod
    async def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        """Fetch one row by id."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        ilike: dict[str, str] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows matching equality ``filters`` and LIKE ``ilike`` patterns.

        ``ilike`` patterns use SQL wildcards (``%`` and ``_``) with backslash
        escapes and match case-insensitively.
        """

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored."""

    @abstractmethod
    async def update(
        self, table: str, row_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Apply ``changes`` to one row; returns None when the row is missing."""

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> bool:
        """Delete one row; returns whether a row was removed."""

    async def close(self) -> None:
        """Release any underlying connection."""
