"""Jobs and expenses: the single source of truth for financial invariants."""

from dataclasses import dataclass, field
from typing import Any

import structlog

from fiscalia.errors import NotFoundError, OwnershipError, ValidationError
from fiscalia.models import EXPENSES, JOBS, Expense, Job, JobStatus
from fiscalia.normalise import (
    ensure_positive_amount,
    generate_id,
    normalize_category,
    normalize_date,
    normalize_nullable_string,
    parse_amount,
    today_iso,
)
from fiscalia.repository.aggregates import recalculate_job_totals
from fiscalia.store.base import RecordStore, contains_pattern

logger = structlog.get_logger(__name__)

JOB_NOT_FOUND = "Contrat introuvable."
EXPENSE_NOT_FOUND = "Dépense introuvable."

_JOB_TEXT_FIELDS = ("client_name", "address", "description")
_DERIVED_JOB_FIELDS = ("expenses", "profit")


@dataclass
class ExpenseMutation:
    """An expense write and every job aggregate it refreshed."""

    expense: Expense
    updated_jobs: list[Job] = field(default_factory=list)


class FinancialRepository:
    """CRUD for jobs and expenses with aggregate recomputation."""

    def __init__(self, store: RecordStore):
        self.store = store

    # === Lookups ===

    async def _owned_row(self, table: str, user_id: str, row_id: str) -> dict[str, Any] | None:
        row = await self.store.get(table, row_id)
        if row is None or row.get("user_id") != user_id:
            return None
        return row

    async def get_job(self, user_id: str, job_id: str) -> Job | None:
        row = await self._owned_row(JOBS, user_id, job_id)
        return Job.from_row(row) if row else None

    async def get_expense(self, user_id: str, expense_id: str) -> Expense | None:
        row = await self._owned_row(EXPENSES, user_id, expense_id)
        return Expense.from_row(row) if row else None

    async def _require_job(self, user_id: str, job_id: str) -> Job:
        job = await self.get_job(user_id, job_id)
        if job is None:
            raise NotFoundError(JOB_NOT_FOUND, details={"job_id": job_id})
        return job

    async def _require_expense(self, user_id: str, expense_id: str) -> Expense:
        expense = await self.get_expense(user_id, expense_id)
        if expense is None:
            raise NotFoundError(EXPENSE_NOT_FOUND, details={"expense_id": expense_id})
        return expense

    async def list_jobs(self, user_id: str) -> list[Job]:
        rows = await self.store.select(JOBS, filters={"user_id": user_id}, order_by="created_at")
        return [Job.from_row(row) for row in rows]

    async def list_expenses(
        self,
        user_id: str,
        job_id: str | None = None,
        limit: int | None = None,
    ) -> list[Expense]:
        filters: dict[str, Any] = {"user_id": user_id}
        if job_id is not None:
            filters["job_id"] = job_id
        rows = await self.store.select(
            EXPENSES, filters=filters, order_by="date", descending=True, limit=limit
        )
        return [Expense.from_row(row) for row in rows]

    async def find_job_by_name(self, user_id: str, name: str) -> Job | None:
        """Most recently updated job whose name contains ``name`` (case-insensitive)."""
        rows = await self.store.select(
            JOBS,
            filters={"user_id": user_id},
            ilike={"name": contains_pattern(name)},
            order_by="updated_at",
            descending=True,
            limit=1,
        )
        return Job.from_row(rows[0]) if rows else None

    async def find_expense_by_name(self, user_id: str, name: str) -> Expense | None:
        """Most recently updated expense whose name contains ``name`` (case-insensitive)."""
        rows = await self.store.select(
            EXPENSES,
            filters={"user_id": user_id},
            ilike={"name": contains_pattern(name)},
            order_by="updated_at",
            descending=True,
            limit=1,
        )
        return Expense.from_row(rows[0]) if rows else None

    async def _check_id_ownership(
        self, table: str, user_id: str, row_id: str, label: str
    ) -> dict[str, Any] | None:
        existing = await self.store.get(table, row_id)
        if existing is not None and existing.get("user_id") != user_id:
            raise OwnershipError(
                f"Identifiant de {label} déjà utilisé par un autre utilisateur.",
                details={"id": row_id},
            )
        return existing

    # === Jobs ===

    async def create_job(
        self,
        user_id: str,
        name: Any,
        revenue: Any,
        status: Any = None,
        client_name: Any = None,
        address: Any = None,
        description: Any = None,
        start_date: Any = None,
        end_date: Any = None,
        job_id: str | None = None,
    ) -> Job:
        clean_name = normalize_nullable_string(name)
        if not clean_name:
            raise ValidationError("Le nom du contrat est requis.")
        amount = ensure_positive_amount(
            revenue, f"Impossible de créer le contrat « {clean_name} » : montant invalide."
        )
        job_status = JobStatus.parse(status) if normalize_nullable_string(status) else JobStatus.IN_PROGRESS

        row_id = normalize_nullable_string(job_id) or generate_id("job")
        existing = await self._check_id_ownership(JOBS, user_id, row_id, "contrat")

        fields: dict[str, Any] = {
            "name": clean_name,
            "status": job_status.value,
            "revenue": amount,
            "start_date": normalize_date(start_date) or today_iso(),
            "end_date": normalize_date(end_date),
            **{
                key: normalize_nullable_string(value)
                for key, value in zip(_JOB_TEXT_FIELDS, (client_name, address, description))
            },
        }

        if existing is not None:
            # Re-sent create for a known id: overwrite, then re-derive totals.
            await self.store.update(JOBS, row_id, fields)
            job = await recalculate_job_totals(self.store, user_id, row_id)
            logger.info("job_upserted", job_id=row_id, user_id=user_id)
            return job

        row = await self.store.insert(
            JOBS,
            {"id": row_id, "user_id": user_id, "expenses": 0.0, "profit": amount, **fields},
        )
        logger.info("job_created", job_id=row_id, user_id=user_id, revenue=amount)
        return Job.from_row(row)

    async def update_job(self, user_id: str, job_id: str, changes: dict[str, Any]) -> Job:
        """Apply the keys present in ``changes``.

        ``expenses`` and ``profit`` are derived and cannot be written directly.
        """
        current = await self._require_job(user_id, job_id)
        payload: dict[str, Any] = {}

        if "name" in changes:
            name = normalize_nullable_string(changes["name"])
            if not name:
                raise ValidationError("Le nom du contrat ne peut pas être vide.")
            payload["name"] = name
        for key in _JOB_TEXT_FIELDS:
            if key in changes:
                payload[key] = normalize_nullable_string(changes[key])
        if "status" in changes:
            if not normalize_nullable_string(changes["status"]):
                raise ValidationError("Le statut du contrat ne peut pas être vide.")
            payload["status"] = JobStatus.parse(changes["status"]).value
        for key in ("start_date", "end_date"):
            if key in changes:
                payload[key] = normalize_date(changes[key])
        if "revenue" in changes:
            payload["revenue"] = ensure_positive_amount(
                changes["revenue"], "Montant de revenu invalide."
            )

        ignored = [key for key in _DERIVED_JOB_FIELDS if key in changes]
        if ignored:
            logger.warning("derived_fields_ignored", job_id=job_id, fields=ignored)

        if not payload:
            raise ValidationError("Aucune mise à jour valide n'a été fournie pour le contrat.")

        row = await self.store.update(JOBS, job_id, payload)
        if row is None:
            raise NotFoundError(JOB_NOT_FOUND, details={"job_id": job_id})
        logger.info("job_updated", job_id=job_id, fields=sorted(payload))

        if "revenue" in payload and payload["revenue"] != current.revenue:
            return await recalculate_job_totals(self.store, user_id, job_id)
        return Job.from_row(row)

    async def update_job_status(self, user_id: str, job_id: str, status: Any) -> Job:
        return await self.update_job(user_id, job_id, {"status": status})

    async def delete_job(self, user_id: str, job_id: str) -> None:
        """Delete a job; its linked expenses go with it."""
        await self._require_job(user_id, job_id)
        if not await self.store.delete(JOBS, job_id):
            raise NotFoundError(JOB_NOT_FOUND, details={"job_id": job_id})
        logger.info("job_deleted", job_id=job_id, user_id=user_id)

    # === Expenses ===

    async def create_expense(
        self,
        user_id: str,
        name: Any,
        amount: Any,
        category: Any = None,
        date: Any = None,
        job_id: str | None = None,
        vendor: Any = None,
        notes: Any = None,
        receipt_path: Any = None,
        expense_id: str | None = None,
    ) -> ExpenseMutation:
        clean_name = normalize_nullable_string(name)
        if not clean_name:
            raise ValidationError("Le nom de la dépense est requis.")
        value = ensure_positive_amount(
            amount, f"Impossible de créer la dépense « {clean_name} » : montant invalide."
        )

        linked_job = normalize_nullable_string(job_id)
        if linked_job:
            await self._require_job(user_id, linked_job)

        row_id = normalize_nullable_string(expense_id) or generate_id("exp")
        existing = await self._check_id_ownership(EXPENSES, user_id, row_id, "dépense")

        fields = {
            "job_id": linked_job,
            "name": clean_name,
            "amount": value,
            "category": normalize_category(category),
            "date": normalize_date(date) or today_iso(),
            "vendor": normalize_nullable_string(vendor),
            "notes": normalize_nullable_string(notes),
            "receipt_path": normalize_nullable_string(receipt_path),
        }

        if existing is not None:
            row = await self.store.update(EXPENSES, row_id, fields)
            previous_job = existing.get("job_id")
        else:
            row = await self.store.insert(EXPENSES, {"id": row_id, "user_id": user_id, **fields})
            previous_job = None

        expense = Expense.from_row(row)
        logger.info(
            "expense_created",
            expense_id=expense.id,
            job_id=expense.job_id,
            amount=expense.amount,
        )
        updated = await self._recalculate(user_id, previous_job, expense.job_id)
        return ExpenseMutation(expense=expense, updated_jobs=updated)

    async def update_expense(
        self, user_id: str, expense_id: str, changes: dict[str, Any]
    ) -> ExpenseMutation:
        """Apply the keys present in ``changes``; ``job_id: None`` unlinks."""
        existing = await self._require_expense(user_id, expense_id)
        payload: dict[str, Any] = {}

        if "name" in changes:
            name = normalize_nullable_string(changes["name"])
            if not name:
                raise ValidationError("Le nom de la dépense ne peut pas être vide.")
            payload["name"] = name
        if "amount" in changes:
            value = parse_amount(changes["amount"])
            if value == 0:
                raise ValidationError(
                    "Le montant doit être supérieur à zéro. "
                    "Utilisez la suppression pour retirer la dépense."
                )
            payload["amount"] = ensure_positive_amount(
                changes["amount"], "Montant de dépense invalide."
            )
        if "category" in changes:
            if not normalize_nullable_string(changes["category"]):
                raise ValidationError("La catégorie ne peut pas être vide.")
            payload["category"] = normalize_category(changes["category"])
        if "date" in changes:
            payload["date"] = normalize_date(changes["date"]) or today_iso()
        if "job_id" in changes:
            linked_job = normalize_nullable_string(changes["job_id"])
            if linked_job:
                await self._require_job(user_id, linked_job)
            payload["job_id"] = linked_job
        for key in ("vendor", "notes", "receipt_path"):
            if key in changes:
                payload[key] = normalize_nullable_string(changes[key])

        if not payload:
            raise ValidationError("Aucune mise à jour valide n'a été fournie pour la dépense.")

        row = await self.store.update(EXPENSES, expense_id, payload)
        if row is None:
            raise NotFoundError(EXPENSE_NOT_FOUND, details={"expense_id": expense_id})
        expense = Expense.from_row(row)
        logger.info("expense_updated", expense_id=expense_id, fields=sorted(payload))

        if "amount" in payload or "job_id" in payload:
            updated = await self._recalculate(user_id, existing.job_id, expense.job_id)
        else:
            updated = []
        return ExpenseMutation(expense=expense, updated_jobs=updated)

    async def delete_expense(self, user_id: str, expense_id: str) -> list[Job]:
        """Delete an expense and return the refreshed job, if it was linked."""
        existing = await self._require_expense(user_id, expense_id)
        if not await self.store.delete(EXPENSES, expense_id):
            raise NotFoundError(EXPENSE_NOT_FOUND, details={"expense_id": expense_id})
        logger.info("expense_deleted", expense_id=expense_id, job_id=existing.job_id)
        return await self._recalculate(user_id, existing.job_id)

    async def attach_expense(self, user_id: str, expense_id: str, job_id: str) -> ExpenseMutation:
        await self._require_job(user_id, job_id)
        existing = await self._require_expense(user_id, expense_id)
        row = await self.store.update(EXPENSES, expense_id, {"job_id": job_id})
        if row is None:
            raise NotFoundError(EXPENSE_NOT_FOUND, details={"expense_id": expense_id})
        logger.info(
            "expense_attached",
            expense_id=expense_id,
            job_id=job_id,
            previous_job_id=existing.job_id,
        )
        updated = await self._recalculate(user_id, existing.job_id, job_id)
        return ExpenseMutation(expense=Expense.from_row(row), updated_jobs=updated)

    async def detach_expense(self, user_id: str, expense_id: str) -> ExpenseMutation:
        existing = await self._require_expense(user_id, expense_id)
        row = await self.store.update(EXPENSES, expense_id, {"job_id": None})
        if row is None:
            raise NotFoundError(EXPENSE_NOT_FOUND, details={"expense_id": expense_id})
        logger.info("expense_detached", expense_id=expense_id, job_id=existing.job_id)
        updated = await self._recalculate(user_id, existing.job_id)
        return ExpenseMutation(expense=Expense.from_row(row), updated_jobs=updated)

    async def _recalculate(self, user_id: str, *job_ids: str | None) -> list[Job]:
        """Refresh every distinct, still-existing job among ``job_ids``."""
        refreshed: list[Job] = []
        seen: set[str] = set()
        for job_id in job_ids:
            if not job_id or job_id in seen:
                continue
            seen.add(job_id)
            if await self.get_job(user_id, job_id) is None:
                continue
            refreshed.append(await recalculate_job_totals(self.store, user_id, job_id))
        return refreshed
