"""Entity repository over the record store."""

from fiscalia.repository.aggregates import recalculate_job_totals
from fiscalia.repository.catalog import CatalogRepository
from fiscalia.repository.context import ContextRepository
from fiscalia.repository.financial import ExpenseMutation, FinancialRepository

__all__ = [
    "FinancialRepository",
    "CatalogRepository",
    "ContextRepository",
    "ExpenseMutation",
    "recalculate_job_totals",
]
