"""Financial aggregation: a job's cached ``expenses`` and ``profit`` fields.

Only the entity repository calls into this module, right after an expense
write that changes a job linkage or amount, or a revenue change.
"""

import structlog

from fiscalia.errors import NotFoundError, PersistenceError
from fiscalia.models import EXPENSES, JOBS, Job
from fiscalia.store.base import RecordStore, utc_now_iso

logger = structlog.get_logger(__name__)

PROFIT_TOLERANCE = 0.01


async def recalculate_job_totals(store: RecordStore, user_id: str, job_id: str) -> Job:
    """Recompute ``expenses = sum(linked amounts)`` and ``profit = revenue - expenses``.

    The sum is read from the authoritative expense rows, so concurrent writes
    converge on the next recomputation.
    """
    row = await store.get(JOBS, job_id)
    if row is None or row.get("user_id") != user_id:
        raise NotFoundError("Contrat introuvable.", details={"job_id": job_id})

    linked = await store.select(EXPENSES, filters={"user_id": user_id, "job_id": job_id})
    total_expenses = round(sum(float(e.get("amount") or 0) for e in linked), 2)
    profit = round(float(row.get("revenue") or 0) - total_expenses, 2)

    updated = await store.update(
        JOBS,
        job_id,
        {"expenses": total_expenses, "profit": profit, "updated_at": utc_now_iso()},
    )
    if updated is None:
        raise PersistenceError(
            "Erreur de base de données. Réessaie dans un instant.",
            details=f"job {job_id} vanished during recalculation",
        )

    logger.debug(
        "job_totals_recalculated",
        job_id=job_id,
        expense_count=len(linked),
        expenses=total_expenses,
        profit=profit,
    )
    return Job.from_row(updated)


def totals_consistent(job: Job, linked_amounts: list[float]) -> bool:
    """Whether a job's cached aggregate matches its linked expenses."""
    expected_expenses = sum(linked_amounts)
    return (
        abs(job.expenses - expected_expenses) <= PROFIT_TOLERANCE
        and abs(job.profit - (job.revenue - expected_expenses)) <= PROFIT_TOLERANCE
    )
