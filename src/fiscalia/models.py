"""Domain records for jobs, expenses, categories, notifications and memory."""

import unicodedata
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from fiscalia.errors import ValidationError
from fiscalia.normalise import DEFAULT_CATEGORY

# Table names in the persistent store.
JOBS = "jobs"
EXPENSES = "expenses"
CATEGORIES = "categories"
NOTIFICATIONS = "notifications"
CONVERSATIONS = "conversations"
PROFILES = "profiles"


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower().strip()


class JobStatus(str, Enum):
    """Lifecycle of a job (contrat)."""

    IN_PROGRESS = "En cours"
    COMPLETED = "Terminé"
    PAID = "Payé"

    @classmethod
    def parse(cls, value: Any) -> "JobStatus":
        """Accept French labels (any case/accents) or English tokens."""
        if isinstance(value, JobStatus):
            return value
        folded = _fold(str(value or "")).replace("-", "_").replace(" ", "_")
        aliases = {
            "en_cours": cls.IN_PROGRESS,
            "in_progress": cls.IN_PROGRESS,
            "inprogress": cls.IN_PROGRESS,
            "termine": cls.COMPLETED,
            "completed": cls.COMPLETED,
            "complete": cls.COMPLETED,
            "paye": cls.PAID,
            "paid": cls.PAID,
        }
        status = aliases.get(folded)
        if status is None:
            raise ValidationError(
                "Statut invalide. Utilise « En cours », « Terminé » ou « Payé ».",
                details={"status": value},
            )
        return status


@dataclass
class Job:
    id: str
    user_id: str
    name: str
    revenue: float
    status: JobStatus = JobStatus.IN_PROGRESS
    client_name: str | None = None
    address: str | None = None
    description: str | None = None
    expenses: float = 0.0
    profit: float = 0.0
    start_date: str | None = None
    end_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Job":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            revenue=float(row.get("revenue") or 0),
            status=JobStatus.parse(row.get("status") or JobStatus.IN_PROGRESS),
            client_name=row.get("client_name"),
            address=row.get("address"),
            description=row.get("description"),
            expenses=float(row.get("expenses") or 0),
            profit=float(row.get("profit") or 0),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Expense:
    id: str
    user_id: str
    name: str
    amount: float
    category: str = DEFAULT_CATEGORY
    date: str | None = None
    job_id: str | None = None
    vendor: str | None = None
    notes: str | None = None
    receipt_path: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Expense":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            amount=float(row.get("amount") or 0),
            category=row.get("category") or DEFAULT_CATEGORY,
            date=row.get("date"),
            job_id=row.get("job_id"),
            vendor=row.get("vendor"),
            notes=row.get("notes"),
            receipt_path=row.get("receipt_path"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Category:
    id: str
    user_id: str
    name: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Category":
        return cls(id=row["id"], user_id=row["user_id"], name=row["name"])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Notification:
    id: str
    user_id: str
    message: str
    type: str = "info"
    job_id: str | None = None
    read: bool = False
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Notification":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            message=row["message"],
            type=row.get("type") or "info",
            job_id=row.get("job_id"),
            read=bool(row.get("read")),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UserProfile:
    user_id: str
    name: str | None = None
    email: str | None = None
    company_name: str | None = None
    tax_rate: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UserProfile":
        tax_rate = row.get("tax_rate")
        return cls(
            user_id=row.get("user_id") or row["id"],
            name=row.get("name"),
            email=row.get("email"),
            company_name=row.get("company_name"),
            tax_rate=float(tax_rate) if tax_rate is not None else None,
        )


@dataclass
class ConversationMemory:
    """Free-text summary of a conversation, owned by the context layer."""

    user_id: str
    conversation_id: str | None = None
    summary: str = ""
    message_count: int = 0
    updated_at: str | None = None


@dataclass
class FinancialSnapshot:
    """Everything the prompt composer needs to know about one user's books."""

    jobs: list[Job] = field(default_factory=list)
    expenses: list[Expense] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    profile: UserProfile | None = None

    @property
    def total_revenue(self) -> float:
        return round(sum(job.revenue for job in self.jobs), 2)

    @property
    def total_expenses(self) -> float:
        return round(sum(job.expenses for job in self.jobs), 2)

    @property
    def total_profit(self) -> float:
        return round(sum(job.profit for job in self.jobs), 2)

    @property
    def unlinked_expenses(self) -> float:
        return round(sum(e.amount for e in self.expenses if not e.job_id), 2)
