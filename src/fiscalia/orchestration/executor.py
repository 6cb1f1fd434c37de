"""Action executor that applies model actions to the entity repository.

Actions run strictly in order. When one fails after earlier actions mutated
state, the compensation manager walks the completed actions backwards and
deletes what they created. Updates and deletions keep no pre-image, so they
are logged as non-reversible.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

import structlog

from fiscalia.errors import (
    ActionExecutionError,
    FiscaliaError,
    NotFoundError,
    ValidationError,
    normalise_error,
)
from fiscalia.models import Expense, Job
from fiscalia.normalise import normalize_nullable_string
from fiscalia.orchestration.actions import ActionName, ModelAction
from fiscalia.repository.catalog import CatalogRepository
from fiscalia.repository.financial import (
    EXPENSE_NOT_FOUND,
    JOB_NOT_FOUND,
    FinancialRepository,
)

logger = structlog.get_logger(__name__)

ROLLBACK_ACTION = "__rollback__"

CreatedKind = Literal["job", "expense", "category", "notification"]

_JOB_UPDATE_KEYS = {
    "name": "name",
    "clientName": "client_name",
    "address": "address",
    "description": "description",
    "status": "status",
    "startDate": "start_date",
    "endDate": "end_date",
    "revenue": "revenue",
    "amount": "revenue",
    "expenses": "expenses",
    "profit": "profit",
}
_EXPENSE_UPDATE_KEYS = {
    "name": "name",
    "amount": "amount",
    "category": "category",
    "date": "date",
    "vendor": "vendor",
    "notes": "notes",
    "receiptPath": "receipt_path",
    "receiptImage": "receipt_path",
}


class TurnState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class LogEntry:
    action: str
    status: Literal["success", "failed"]
    detail: str
    payload: Any = None
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "status": self.status,
            "detail": self.detail,
            "payload": self.payload,
            "elapsedMs": self.elapsed_ms,
        }


@dataclass
class HandlerResult:
    detail: str
    payload: Any = None
    mutated: bool = True
    created: tuple[CreatedKind, str] | None = None


@dataclass
class CompletedAction:
    action: ModelAction
    result: HandlerResult


@dataclass
class ExecutionResult:
    success: bool
    mutated: bool
    log: list[LogEntry] = field(default_factory=list)
    error: str | None = None
    state: TurnState = TurnState.SUCCEEDED
    failed_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "mutated": self.mutated,
            "log": [entry.to_dict() for entry in self.log],
        }
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_error(cls, error: ActionExecutionError) -> "ExecutionResult":
        details = error.details if isinstance(error.details, dict) else {}
        return cls(
            success=False,
            mutated=error.mutated,
            log=error.log,
            error=error.message,
            state=details.get("state", TurnState.FAILED),
            failed_index=details.get("failed_index"),
        )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _updates(data: dict[str, Any], reference_keys: tuple[str, ...]) -> dict[str, Any]:
    """``data.updates`` when present, else ``data`` without its reference keys."""
    raw = data.get("updates")
    if isinstance(raw, dict):
        return raw
    return {k: v for k, v in data.items() if k not in reference_keys}


def _meaningful(value: Any) -> bool:
    if value is None:
        return False
    return not (isinstance(value, str) and not value.strip())


class ActionExecutor:
    """Runs one turn's actions for one owner."""

    def __init__(self, financial: FinancialRepository, catalog: CatalogRepository):
        self.financial = financial
        self.catalog = catalog
        self._handlers: dict[
            ActionName, Callable[[str, ModelAction], Awaitable[HandlerResult]]
        ] = {
            # Jobs
            ActionName.CREATE_JOB: self._create_job,
            ActionName.UPDATE_JOB: self._update_job,
            ActionName.UPDATE_JOB_STATUS: self._update_job_status,
            ActionName.DELETE_JOB: self._delete_job,
            # Expenses
            ActionName.CREATE_EXPENSE: self._create_expense,
            ActionName.UPDATE_EXPENSE: self._update_expense,
            ActionName.DELETE_EXPENSE: self._delete_expense,
            ActionName.ATTACH_EXPENSE: self._attach_expense,
            ActionName.DETACH_EXPENSE: self._detach_expense,
            # Categories
            ActionName.CREATE_CATEGORY: self._create_category,
            ActionName.RENAME_CATEGORY: self._rename_category,
            ActionName.DELETE_CATEGORY: self._delete_category,
            # Notifications
            ActionName.CREATE_NOTIFICATION: self._create_notification,
            ActionName.MARK_NOTIFICATION_READ: self._mark_notification_read,
            ActionName.DELETE_NOTIFICATION: self._delete_notification,
            # Read-only
            ActionName.QUERY: self._query,
        }
        missing = set(ActionName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"unhandled actions: {sorted(m.value for m in missing)}")

    async def execute(self, user_id: str, actions: list[ModelAction]) -> ExecutionResult:
        """Run ``actions`` in order.

        Raises ActionExecutionError (carrying the log and mutation flag) when
        an action fails; compensation has already been attempted by then.
        """
        if not actions:
            return ExecutionResult(success=True, mutated=False)

        log: list[LogEntry] = []
        completed: list[CompletedAction] = []
        mutated = False
        state = TurnState.PENDING
        bound = logger.bind(user_id=user_id, actions=len(actions))

        for index, action in enumerate(actions):
            state = TurnState.RUNNING
            start = time.perf_counter()
            bound.debug("action_running", index=index, action=action.name.value)
            try:
                result = await self._handlers[action.name](user_id, action)
            except Exception as e:
                error = normalise_error(e)
                if isinstance(e, FiscaliaError):
                    bound.warning(
                        "action_failed",
                        index=index,
                        action=action.name.value,
                        code=error.code,
                        error=error.message,
                        details=error.details,
                    )
                else:
                    bound.exception("action_crashed", index=index, action=action.name.value)
                log.append(
                    LogEntry(
                        action=action.name.value,
                        status="failed",
                        detail=error.message,
                        payload=action.data,
                        elapsed_ms=_elapsed_ms(start),
                    )
                )
                state = TurnState.FAILED
                message = error.message
                if completed and mutated:
                    rollback = await self._compensate(user_id, completed)
                    log.append(rollback)
                    rolled_back = rollback.payload["rolledBack"]
                    attempted = rollback.payload["attempted"]
                    if rolled_back == attempted:
                        state = TurnState.ROLLED_BACK
                        message += " (Toutes les actions ont été annulées avec succès.)"
                    else:
                        message += (
                            f" (Attention: {rolled_back}/{attempted} actions annulées avec "
                            "succès. Certaines modifications peuvent persister.)"
                        )
                raise ActionExecutionError(
                    message,
                    log=log,
                    mutated=mutated,
                    cause=error,
                    details={"state": state, "failed_index": index},
                ) from e

            log.append(
                LogEntry(
                    action=action.name.value,
                    status="success",
                    detail=action.confirmation_message or result.detail,
                    payload=result.payload,
                    elapsed_ms=_elapsed_ms(start),
                )
            )
            completed.append(CompletedAction(action=action, result=result))
            mutated = mutated or result.mutated

        state = TurnState.SUCCEEDED
        bound.info("actions_executed", mutated=mutated, state=state.value)
        return ExecutionResult(success=True, mutated=mutated, log=log, state=state)

    # === Compensation ===

    async def _compensate(self, user_id: str, completed: list[CompletedAction]) -> LogEntry:
        start = time.perf_counter()
        attempted = len(completed)
        rolled_back = 0
        for item in reversed(completed):
            try:
                if await self._reverse(user_id, item):
                    rolled_back += 1
            except Exception as e:
                logger.error(
                    "rollback_step_failed",
                    action=item.action.name.value,
                    error=normalise_error(e).message,
                )

        if rolled_back == attempted:
            detail = f"Toutes les {attempted} actions ont été annulées."
            status: Literal["success", "failed"] = "success"
        else:
            detail = (
                f"{rolled_back}/{attempted} actions ont été annulées. "
                "Certaines modifications persistent."
            )
            status = "failed"
        logger.info("rollback_completed", rolled_back=rolled_back, attempted=attempted)
        return LogEntry(
            action=ROLLBACK_ACTION,
            status=status,
            detail=detail,
            payload={"rolledBack": rolled_back, "attempted": attempted},
            elapsed_ms=_elapsed_ms(start),
        )

    async def _reverse(self, user_id: str, item: CompletedAction) -> bool:
        """Undo one completed action. Returns False when it cannot be undone."""
        result = item.result
        if not result.mutated:
            return True
        if result.created is None:
            logger.warning("rollback_not_supported", action=item.action.name.value)
            return False

        kind, entity_id = result.created
        if kind == "job":
            await self.financial.delete_job(user_id, entity_id)
        elif kind == "expense":
            await self.financial.delete_expense(user_id, entity_id)
        elif kind == "notification":
            await self.catalog.delete_notification(user_id, notification_id=entity_id)
        else:
            await self.catalog.delete_category_by_id(user_id, entity_id)
        logger.info("rollback_step", kind=kind, entity_id=entity_id)
        return True

    # === Entity resolution ===

    async def _resolve_job(self, user_id: str, data: dict[str, Any]) -> Job:
        job_id = normalize_nullable_string(data.get("jobId"))
        if job_id:
            job = await self.financial.get_job(user_id, job_id)
            if job is not None:
                return job
        for candidate in (normalize_nullable_string(data.get("jobName")), job_id):
            if candidate:
                job = await self.financial.find_job_by_name(user_id, candidate)
                if job is not None:
                    return job
        raise NotFoundError(JOB_NOT_FOUND, details={"jobId": job_id, "jobName": data.get("jobName")})

    async def _resolve_expense(self, user_id: str, data: dict[str, Any]) -> Expense:
        expense_id = normalize_nullable_string(data.get("expenseId"))
        if expense_id:
            expense = await self.financial.get_expense(user_id, expense_id)
            if expense is not None:
                return expense
        for candidate in (normalize_nullable_string(data.get("expenseName")), expense_id):
            if candidate:
                expense = await self.financial.find_expense_by_name(user_id, candidate)
                if expense is not None:
                    return expense
        raise NotFoundError(
            EXPENSE_NOT_FOUND,
            details={"expenseId": expense_id, "expenseName": data.get("expenseName")},
        )

    async def _optional_job_id(self, user_id: str, data: dict[str, Any]) -> str | None:
        if data.get("jobId") or data.get("jobName"):
            return (await self._resolve_job(user_id, data)).id
        return None

    # === Job handlers ===

    async def _create_job(self, user_id: str, action: ModelAction) -> HandlerResult:
        data = action.data
        name = normalize_nullable_string(data.get("name")) or normalize_nullable_string(
            data.get("jobName")
        )
        explicit_id = normalize_nullable_string(data.get("jobId"))
        existed = bool(explicit_id and await self.financial.get_job(user_id, explicit_id))
        job = await self.financial.create_job(
            user_id,
            name=name,
            revenue=data.get("revenue", data.get("amount")),
            status=data.get("status"),
            client_name=data.get("clientName"),
            address=data.get("address"),
            description=data.get("description"),
            start_date=data.get("startDate"),
            end_date=data.get("endDate"),
            job_id=explicit_id,
        )
        return HandlerResult(
            detail=f"Contrat « {job.name} » enregistré.",
            payload={"jobId": job.id},
            created=None if existed else ("job", job.id),
        )

    async def _update_job(self, user_id: str, action: ModelAction) -> HandlerResult:
        job = await self._resolve_job(user_id, action.data)
        raw = _updates(action.data, ("jobId", "jobName"))
        changes = {
            _JOB_UPDATE_KEYS[key]: value
            for key, value in raw.items()
            if key in _JOB_UPDATE_KEYS and _meaningful(value)
        }
        if not changes:
            raise ValidationError("Aucune mise à jour valide n'a été fournie pour le contrat.")
        updated = await self.financial.update_job(user_id, job.id, changes)
        return HandlerResult(detail="Contrat mis à jour.", payload={"jobId": updated.id})

    async def _update_job_status(self, user_id: str, action: ModelAction) -> HandlerResult:
        job = await self._resolve_job(user_id, action.data)
        status = action.data.get("status")
        if not _meaningful(status) and isinstance(action.data.get("updates"), dict):
            status = action.data["updates"].get("status")
        if not _meaningful(status):
            raise ValidationError("Le statut du contrat est requis.")
        updated = await self.financial.update_job_status(user_id, job.id, status)
        return HandlerResult(
            detail="Statut du contrat mis à jour.",
            payload={"jobId": updated.id, "status": updated.status.value},
        )

    async def _delete_job(self, user_id: str, action: ModelAction) -> HandlerResult:
        job = await self._resolve_job(user_id, action.data)
        await self.financial.delete_job(user_id, job.id)
        return HandlerResult(detail="Contrat supprimé.", payload={"jobId": job.id})

    # === Expense handlers ===

    async def _create_expense(self, user_id: str, action: ModelAction) -> HandlerResult:
        data = action.data
        name = (
            normalize_nullable_string(data.get("name"))
            or normalize_nullable_string(data.get("expenseName"))
            or normalize_nullable_string(data.get("vendor"))
        )
        if not name:
            raise ValidationError("Le nom de la dépense est requis.")
        job_id = await self._optional_job_id(user_id, data)
        explicit_id = normalize_nullable_string(data.get("expenseId"))
        existed = bool(explicit_id and await self.financial.get_expense(user_id, explicit_id))
        mutation = await self.financial.create_expense(
            user_id,
            name=name,
            amount=data.get("amount"),
            category=data.get("category"),
            date=data.get("date"),
            job_id=job_id,
            vendor=data.get("vendor"),
            notes=data.get("notes"),
            receipt_path=data.get("receiptPath") or data.get("receiptImage"),
            expense_id=explicit_id,
        )
        expense = mutation.expense
        return HandlerResult(
            detail=f"Dépense « {expense.name} » créée.",
            payload={"expenseId": expense.id, "jobId": expense.job_id},
            created=None if existed else ("expense", expense.id),
        )

    async def _update_expense(self, user_id: str, action: ModelAction) -> HandlerResult:
        data = action.data
        reference = dict(data)
        if not reference.get("expenseName") and isinstance(data.get("updates"), dict):
            # Without ``updates`` the name field is the new value, not a reference.
            reference["expenseName"] = data.get("name")
        expense = await self._resolve_expense(user_id, reference)

        raw = _updates(data, ("expenseId", "expenseName"))
        changes: dict[str, Any] = {
            _EXPENSE_UPDATE_KEYS[key]: value
            for key, value in raw.items()
            if key in _EXPENSE_UPDATE_KEYS and _meaningful(value)
        }
        if "jobId" in raw and raw["jobId"] is None:
            changes["job_id"] = None
        elif raw.get("jobId") or raw.get("jobName"):
            changes["job_id"] = (await self._resolve_job(user_id, raw)).id
        if not changes:
            raise ValidationError("Aucune mise à jour valide n'a été fournie pour la dépense.")

        mutation = await self.financial.update_expense(user_id, expense.id, changes)
        return HandlerResult(
            detail="Dépense mise à jour.",
            payload={
                "expenseId": mutation.expense.id,
                "updatedJobs": [job.id for job in mutation.updated_jobs],
            },
        )

    async def _delete_expense(self, user_id: str, action: ModelAction) -> HandlerResult:
        expense = await self._resolve_expense(user_id, action.data)
        updated = await self.financial.delete_expense(user_id, expense.id)
        return HandlerResult(
            detail="Dépense supprimée.",
            payload={"expenseId": expense.id, "updatedJobs": [job.id for job in updated]},
        )

    async def _attach_expense(self, user_id: str, action: ModelAction) -> HandlerResult:
        expense = await self._resolve_expense(user_id, action.data)
        job = await self._resolve_job(user_id, action.data)
        await self.financial.attach_expense(user_id, expense.id, job.id)
        return HandlerResult(
            detail="Dépense associée au contrat.",
            payload={"expenseId": expense.id, "jobId": job.id},
        )

    async def _detach_expense(self, user_id: str, action: ModelAction) -> HandlerResult:
        expense = await self._resolve_expense(user_id, action.data)
        await self.financial.detach_expense(user_id, expense.id)
        return HandlerResult(detail="Dépense détachée du contrat.", payload={"expenseId": expense.id})

    # === Category handlers ===

    async def _create_category(self, user_id: str, action: ModelAction) -> HandlerResult:
        category, created = await self.catalog.create_category(
            user_id, action.data.get("name") or action.data.get("categoryName")
        )
        return HandlerResult(
            detail=f"Catégorie « {category.name} » ajoutée.",
            payload={"categoryId": category.id},
            mutated=created,
            created=("category", category.id) if created else None,
        )

    async def _rename_category(self, user_id: str, action: ModelAction) -> HandlerResult:
        data = action.data
        current = data.get("categoryName") or data.get("name")
        target = data.get("nextName") or data.get("newName")
        rewritten = await self.catalog.rename_category(user_id, current, target)
        next_name = normalize_nullable_string(target)
        return HandlerResult(
            detail=f"Catégorie renommée en « {next_name} ».",
            payload={"expensesUpdated": rewritten},
        )

    async def _delete_category(self, user_id: str, action: ModelAction) -> HandlerResult:
        name = action.data.get("categoryName") or action.data.get("name")
        reassigned = await self.catalog.delete_category(user_id, name)
        return HandlerResult(
            detail=f"Catégorie « {normalize_nullable_string(name)} » supprimée.",
            payload={"expensesReassigned": reassigned},
        )

    # === Notification handlers ===

    async def _create_notification(self, user_id: str, action: ModelAction) -> HandlerResult:
        data = action.data
        job_id = await self._optional_job_id(user_id, data)
        notification = await self.catalog.create_notification(
            user_id, data.get("message"), type=data.get("type"), job_id=job_id
        )
        return HandlerResult(
            detail="Notification créée.",
            payload={"notificationId": notification.id},
            created=("notification", notification.id),
        )

    async def _mark_notification_read(self, user_id: str, action: ModelAction) -> HandlerResult:
        notification = await self.catalog.mark_notification_read(
            user_id,
            notification_id=action.data.get("notificationId"),
            message=action.data.get("notificationMessage"),
        )
        return HandlerResult(
            detail="Notification marquée comme lue.",
            payload={"notificationId": notification.id},
        )

    async def _delete_notification(self, user_id: str, action: ModelAction) -> HandlerResult:
        notification = await self.catalog.delete_notification(
            user_id,
            notification_id=action.data.get("notificationId"),
            message=action.data.get("notificationMessage"),
        )
        return HandlerResult(
            detail="Notification supprimée.",
            payload={"notificationId": notification.id},
        )

    async def _query(self, user_id: str, action: ModelAction) -> HandlerResult:
        return HandlerResult(detail="Réponse fournie sans modification.", mutated=False)
