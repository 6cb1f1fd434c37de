"""Tests for the job/expense repository and aggregate recomputation."""

import pytest

from fiscalia.errors import NotFoundError, OwnershipError, ValidationError
from fiscalia.models import JobStatus
from fiscalia.repository.aggregates import recalculate_job_totals, totals_consistent

from conftest import OTHER_USER_ID


class TestJobs:
    """Tests for job creation and updates."""

    @pytest.mark.asyncio
    async def test_create_job_defaults(self, financial, user_id):
        job = await financial.create_job(user_id, "Rénovation cuisine", "5000")

        assert job.id.startswith("job-")
        assert job.revenue == 5000.0
        assert job.status == JobStatus.IN_PROGRESS
        assert job.expenses == 0.0
        assert job.profit == 5000.0
        assert job.start_date is not None

    @pytest.mark.asyncio
    async def test_create_job_rejects_zero_revenue(self, financial, user_id):
        with pytest.raises(ValidationError, match="montant invalide"):
            await financial.create_job(user_id, "Toiture", 0)

    @pytest.mark.asyncio
    async def test_create_job_requires_name(self, financial, user_id):
        with pytest.raises(ValidationError):
            await financial.create_job(user_id, "  ", 100)

    @pytest.mark.asyncio
    async def test_create_job_with_foreign_id_fails(self, financial, user_id):
        await financial.create_job(OTHER_USER_ID, "Chez Paul", 100, job_id="job-shared")

        with pytest.raises(OwnershipError):
            await financial.create_job(user_id, "Chez moi", 100, job_id="job-shared")

    @pytest.mark.asyncio
    async def test_update_revenue_recomputes_profit(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)
        await financial.create_expense(user_id, "Bois", 1200, job_id=job.id)

        updated = await financial.update_job(user_id, job.id, {"revenue": 6000})

        assert updated.revenue == 6000.0
        assert updated.expenses == 1200.0
        assert updated.profit == 4800.0

    @pytest.mark.asyncio
    async def test_update_ignores_derived_fields(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)

        with pytest.raises(ValidationError):
            await financial.update_job(user_id, job.id, {"profit": 1, "expenses": 2})

        stored = await financial.get_job(user_id, job.id)
        assert stored.profit == 5000.0

    @pytest.mark.asyncio
    async def test_update_status_accepts_english_token(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)

        updated = await financial.update_job_status(user_id, job.id, "paid")

        assert updated.status == JobStatus.PAID

    @pytest.mark.asyncio
    async def test_update_invalid_status(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)

        with pytest.raises(ValidationError, match="Statut invalide"):
            await financial.update_job_status(user_id, job.id, "archived")

    @pytest.mark.asyncio
    async def test_other_users_job_is_not_found(self, financial, user_id):
        job = await financial.create_job(OTHER_USER_ID, "Chez Paul", 100)

        assert await financial.get_job(user_id, job.id) is None
        with pytest.raises(NotFoundError):
            await financial.delete_job(user_id, job.id)

    @pytest.mark.asyncio
    async def test_delete_job_cascades_to_expenses(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)
        mutation = await financial.create_expense(user_id, "Bois", 1200, job_id=job.id)

        await financial.delete_job(user_id, job.id)

        assert await financial.get_job(user_id, job.id) is None
        assert await financial.get_expense(user_id, mutation.expense.id) is None

    @pytest.mark.asyncio
    async def test_find_job_by_name_is_case_insensitive(self, financial, user_id):
        await financial.create_job(user_id, "Rénovation Cuisine Tremblay", 5000)

        found = await financial.find_job_by_name(user_id, "cuisine")

        assert found is not None
        assert found.name == "Rénovation Cuisine Tremblay"


class TestExpenses:
    """Tests for expense writes and their effect on job aggregates."""

    @pytest.mark.asyncio
    async def test_linked_expense_updates_job(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)

        mutation = await financial.create_expense(user_id, "Bois", "1 200,00 $", job_id=job.id)

        assert mutation.expense.amount == 1200.0
        assert mutation.expense.category == "Autre"
        assert len(mutation.updated_jobs) == 1
        assert mutation.updated_jobs[0].expenses == 1200.0
        assert mutation.updated_jobs[0].profit == 3800.0

    @pytest.mark.asyncio
    async def test_create_expense_unknown_job(self, financial, user_id):
        with pytest.raises(NotFoundError):
            await financial.create_expense(user_id, "Bois", 10, job_id="job-missing")

    @pytest.mark.asyncio
    async def test_update_amount_to_zero_rejected(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)
        mutation = await financial.create_expense(user_id, "Bois", 1200, job_id=job.id)

        with pytest.raises(ValidationError, match="supérieur à zéro"):
            await financial.update_expense(user_id, mutation.expense.id, {"amount": 0})

        stored = await financial.get_job(user_id, job.id)
        assert stored.expenses == 1200.0

    @pytest.mark.asyncio
    async def test_moving_expense_refreshes_both_jobs(self, financial, user_id):
        first = await financial.create_job(user_id, "Terrasse", 5000)
        second = await financial.create_job(user_id, "Cuisine", 3000)
        mutation = await financial.create_expense(user_id, "Bois", 1200, job_id=first.id)

        moved = await financial.update_expense(
            user_id, mutation.expense.id, {"job_id": second.id}
        )

        totals = {job.id: job for job in moved.updated_jobs}
        assert totals[first.id].expenses == 0.0
        assert totals[first.id].profit == 5000.0
        assert totals[second.id].expenses == 1200.0
        assert totals[second.id].profit == 1800.0

    @pytest.mark.asyncio
    async def test_delete_expense_refreshes_job(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)
        mutation = await financial.create_expense(user_id, "Bois", 1200, job_id=job.id)

        refreshed = await financial.delete_expense(user_id, mutation.expense.id)

        assert refreshed[0].expenses == 0.0
        assert refreshed[0].profit == 5000.0

    @pytest.mark.asyncio
    async def test_attach_and_detach(self, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 5000)
        mutation = await financial.create_expense(user_id, "Vis", 50)
        assert mutation.updated_jobs == []

        attached = await financial.attach_expense(user_id, mutation.expense.id, job.id)
        assert attached.expense.job_id == job.id
        assert attached.updated_jobs[0].profit == 4950.0

        detached = await financial.detach_expense(user_id, mutation.expense.id)
        assert detached.expense.job_id is None
        assert detached.updated_jobs[0].profit == 5000.0

    @pytest.mark.asyncio
    async def test_id_like_category_falls_back(self, financial, user_id):
        mutation = await financial.create_expense(
            user_id, "Vis", 50, category="exp-0b9a7c1e-2f1d-4a43-9c0e-1234567890ab"
        )

        assert mutation.expense.category == "Autre"


class TestAggregates:
    """Tests for the aggregation engine itself."""

    @pytest.mark.asyncio
    async def test_recalculate_from_linked_rows(self, store, financial, user_id):
        job = await financial.create_job(user_id, "Terrasse", 1000)
        await financial.create_expense(user_id, "Bois", 250.55, job_id=job.id)
        await financial.create_expense(user_id, "Vis", 49.45, job_id=job.id)
        # Corrupt the cached aggregate, then recompute.
        await store.update("jobs", job.id, {"expenses": 0, "profit": 1000})

        refreshed = await recalculate_job_totals(store, user_id, job.id)

        assert refreshed.expenses == 300.0
        assert refreshed.profit == 700.0
        assert totals_consistent(refreshed, [250.55, 49.45])

    @pytest.mark.asyncio
    async def test_recalculate_missing_job(self, store, user_id):
        with pytest.raises(NotFoundError):
            await recalculate_job_totals(store, user_id, "job-missing")
