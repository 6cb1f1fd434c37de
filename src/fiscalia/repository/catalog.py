"""Categories and notifications."""

from typing import Any

import structlog

from fiscalia.errors import NotFoundError, ValidationError
from fiscalia.models import CATEGORIES, EXPENSES, NOTIFICATIONS, Category, Notification
from fiscalia.normalise import DEFAULT_CATEGORY, generate_id, normalize_nullable_string
from fiscalia.store.base import RecordStore, escape_like

logger = structlog.get_logger(__name__)

NOTIFICATION_SEARCH_WINDOW = 20


class CatalogRepository:
    """Owner-scoped category list and notification feed."""

    def __init__(self, store: RecordStore):
        self.store = store

    # === Categories ===

    async def list_categories(self, user_id: str) -> list[Category]:
        rows = await self.store.select(CATEGORIES, filters={"user_id": user_id}, order_by="name")
        return [Category.from_row(row) for row in rows]

    async def _find_category(self, user_id: str, name: str) -> Category | None:
        rows = await self.store.select(
            CATEGORIES,
            filters={"user_id": user_id},
            ilike={"name": escape_like(name)},
            limit=1,
        )
        return Category.from_row(rows[0]) if rows else None

    async def create_category(self, user_id: str, name: Any) -> tuple[Category, bool]:
        """Create a category unless one with the same name exists.

        Returns the category and whether a row was created.
        """
        clean = normalize_nullable_string(name)
        if not clean:
            raise ValidationError("Le nom de la catégorie est requis.")
        existing = await self._find_category(user_id, clean)
        if existing is not None:
            return existing, False
        row = await self.store.insert(
            CATEGORIES, {"id": generate_id("cat"), "user_id": user_id, "name": clean}
        )
        logger.info("category_created", user_id=user_id, name=clean)
        return Category.from_row(row), True

    async def delete_category_by_id(self, user_id: str, category_id: str) -> bool:
        row = await self.store.get(CATEGORIES, category_id)
        if row is None or row.get("user_id") != user_id:
            return False
        return await self.store.delete(CATEGORIES, category_id)

    async def rename_category(self, user_id: str, current_name: Any, next_name: Any) -> int:
        """Rename a category and every expense that references it.

        Returns the number of expenses rewritten. A case-insensitive identical
        name is a no-op.
        """
        current = normalize_nullable_string(current_name)
        target = normalize_nullable_string(next_name)
        if not current or not target:
            raise ValidationError("Les noms de catégorie sont requis.")
        if current.lower() == target.lower():
            return 0
        if current.lower() == DEFAULT_CATEGORY.lower():
            raise ValidationError(f"La catégorie « {DEFAULT_CATEGORY} » ne peut pas être renommée.")

        if await self._find_category(user_id, target) is not None:
            raise ValidationError("La catégorie existe déjà.")
        category = await self._find_category(user_id, current)
        if category is None:
            raise NotFoundError("Catégorie introuvable.", details={"name": current})

        await self.store.update(CATEGORIES, category.id, {"name": target})
        rewritten = await self._reassign_expenses(user_id, current, target)
        logger.info(
            "category_renamed",
            user_id=user_id,
            previous=current,
            name=target,
            expenses=rewritten,
        )
        return rewritten

    async def delete_category(self, user_id: str, name: Any) -> int:
        """Delete a category; its expenses fall back to the default category.

        Returns the number of expenses reassigned.
        """
        clean = normalize_nullable_string(name)
        if not clean:
            raise ValidationError("Le nom de la catégorie est requis.")
        if clean.lower() == DEFAULT_CATEGORY.lower():
            raise ValidationError(f"La catégorie « {DEFAULT_CATEGORY} » ne peut pas être supprimée.")

        category = await self._find_category(user_id, clean)
        if category is not None:
            await self.store.delete(CATEGORIES, category.id)
        reassigned = await self._reassign_expenses(user_id, clean, DEFAULT_CATEGORY)
        if category is None and reassigned == 0:
            raise NotFoundError("Catégorie introuvable.", details={"name": clean})

        logger.info("category_deleted", user_id=user_id, name=clean, expenses=reassigned)
        return reassigned

    async def _reassign_expenses(self, user_id: str, current: str, target: str) -> int:
        rows = await self.store.select(
            EXPENSES, filters={"user_id": user_id}, ilike={"category": escape_like(current)}
        )
        for row in rows:
            await self.store.update(EXPENSES, row["id"], {"category": target})
        return len(rows)

    # === Notifications ===

    async def list_notifications(
        self, user_id: str, limit: int = NOTIFICATION_SEARCH_WINDOW
    ) -> list[Notification]:
        rows = await self.store.select(
            NOTIFICATIONS,
            filters={"user_id": user_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [Notification.from_row(row) for row in rows]

    async def create_notification(
        self,
        user_id: str,
        message: Any,
        type: Any = None,
        job_id: str | None = None,
    ) -> Notification:
        clean = normalize_nullable_string(message)
        if not clean:
            raise ValidationError("Le message de notification est requis.")
        row = await self.store.insert(
            NOTIFICATIONS,
            {
                "id": generate_id("notif"),
                "user_id": user_id,
                "message": clean,
                "type": normalize_nullable_string(type) or "info",
                "read": False,
                "job_id": normalize_nullable_string(job_id),
            },
        )
        logger.info("notification_created", user_id=user_id, notification_id=row["id"])
        return Notification.from_row(row)

    async def resolve_notification(
        self,
        user_id: str,
        notification_id: Any = None,
        message: Any = None,
    ) -> Notification:
        """Find a notification by id, else by message substring among the latest ones."""
        candidate_id = normalize_nullable_string(notification_id)
        if candidate_id:
            row = await self.store.get(NOTIFICATIONS, candidate_id)
            if row is not None and row.get("user_id") == user_id:
                return Notification.from_row(row)

        candidate_message = normalize_nullable_string(message)
        if candidate_message:
            lowered = candidate_message.lower()
            for notification in await self.list_notifications(user_id):
                if lowered in notification.message.lower():
                    return notification

        raise NotFoundError("Notification introuvable.")

    async def mark_notification_read(
        self, user_id: str, notification_id: Any = None, message: Any = None
    ) -> Notification:
        notification = await self.resolve_notification(user_id, notification_id, message)
        row = await self.store.update(NOTIFICATIONS, notification.id, {"read": True})
        if row is None:
            raise NotFoundError("Notification introuvable.")
        return Notification.from_row(row)

    async def delete_notification(
        self, user_id: str, notification_id: Any = None, message: Any = None
    ) -> Notification:
        notification = await self.resolve_notification(user_id, notification_id, message)
        await self.store.delete(NOTIFICATIONS, notification.id)
        logger.info("notification_deleted", user_id=user_id, notification_id=notification.id)
        return notification
