"""Process-local record store for development and tests."""

import itertools
import re
from collections import defaultdict
from typing import Any

import structlog

from fiscalia.models import EXPENSES, JOBS, NOTIFICATIONS
from fiscalia.store.base import RecordStore, utc_now_iso

logger = structlog.get_logger(__name__)


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a SQL LIKE pattern (``%``, ``_``, backslash escapes) to a regex."""
    parts: list[str] = []
    chars = iter(pattern)
    for char in chars:
        if char == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


class InMemoryStore(RecordStore):
    """Dict-backed tables mirroring the relational schema.

    Deleting a job removes its expenses and unlinks its notifications, as the
    foreign keys do in the database.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._touched: dict[tuple[str, str], int] = {}
        self._counter = itertools.count()

    def _touch(self, table: str, row_id: str) -> None:
        self._touched[(table, row_id)] = next(self._counter)

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        row = self._tables[table].get(row_id)
        return dict(row) if row is not None else None

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        ilike: dict[str, str] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        patterns = {col: like_to_regex(p) for col, p in (ilike or {}).items()}
        rows = []
        for row in self._tables[table].values():
            if any(row.get(col) != value for col, value in (filters or {}).items()):
                continue
            if any(
                not regex.fullmatch(str(row.get(col) or "")) for col, regex in patterns.items()
            ):
                continue
            rows.append(row)

        if order_by:
            # Later writes win ties on equal sort values.
            rows.sort(
                key=lambda r: (
                    r.get(order_by) is not None,
                    r.get(order_by) if r.get(order_by) is not None else "",
                    self._touched.get((table, r["id"]), 0),
                ),
                reverse=descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return [dict(row) for row in rows]

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        now = utc_now_iso()
        stored = {"created_at": now, "updated_at": now, **row}
        self._tables[table][stored["id"]] = stored
        self._touch(table, stored["id"])
        return dict(stored)

    async def update(
        self, table: str, row_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        row = self._tables[table].get(row_id)
        if row is None:
            return None
        row.update(changes)
        if "updated_at" not in changes:
            row["updated_at"] = utc_now_iso()
        self._touch(table, row_id)
        return dict(row)

    async def delete(self, table: str, row_id: str) -> bool:
        removed = self._tables[table].pop(row_id, None)
        if removed is None:
            return False
        self._touched.pop((table, row_id), None)
        if table == JOBS:
            self._cascade_job_delete(row_id)
        return True

    def _cascade_job_delete(self, job_id: str) -> None:
        expenses = self._tables[EXPENSES]
        orphaned = [eid for eid, e in expenses.items() if e.get("job_id") == job_id]
        for expense_id in orphaned:
            del expenses[expense_id]
            self._touched.pop((EXPENSES, expense_id), None)
        for notification in self._tables[NOTIFICATIONS].values():
            if notification.get("job_id") == job_id:
                notification["job_id"] = None
        if orphaned:
            logger.debug("job_delete_cascaded", job_id=job_id, expenses=len(orphaned))
