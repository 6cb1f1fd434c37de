"""Action catalogue: the closed set of mutations and queries a turn may request.

Each definition carries the parameter shape shown to the model in the system
prompt. ``sanitize_action`` is the validation boundary for external input;
everything past it works with ``ActionName`` members only.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from fiscalia.errors import ValidationError
from fiscalia.normalise import normalize_nullable_string

logger = structlog.get_logger(__name__)


class ActionName(str, Enum):
    CREATE_JOB = "create_job"
    UPDATE_JOB = "update_job"
    DELETE_JOB = "delete_job"
    UPDATE_JOB_STATUS = "update_job_status"
    CREATE_EXPENSE = "create_expense"
    UPDATE_EXPENSE = "update_expense"
    DELETE_EXPENSE = "delete_expense"
    ATTACH_EXPENSE = "attach_expense"
    DETACH_EXPENSE = "detach_expense"
    CREATE_CATEGORY = "create_category"
    RENAME_CATEGORY = "rename_category"
    DELETE_CATEGORY = "delete_category"
    CREATE_NOTIFICATION = "create_notification"
    MARK_NOTIFICATION_READ = "mark_notification_read"
    DELETE_NOTIFICATION = "delete_notification"
    QUERY = "query"


# Older clients and some models still emit these names.
LEGACY_ACTION_NAMES: dict[str, ActionName] = {
    "create_contract": ActionName.CREATE_JOB,
}

CREATION_ACTIONS = frozenset(
    {
        ActionName.CREATE_JOB,
        ActionName.CREATE_EXPENSE,
        ActionName.CREATE_CATEGORY,
        ActionName.CREATE_NOTIFICATION,
    }
)


@dataclass
class ModelAction:
    """One requested action, already validated against the catalogue."""

    name: ActionName
    data: dict[str, Any] = field(default_factory=dict)
    confirmation_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"action": self.name.value, "data": self.data}
        if self.confirmation_message:
            result["confirmationMessage"] = self.confirmation_message
        return result


@dataclass(frozen=True)
class ActionDefinition:
    name: ActionName
    parameters: str
    description: str


ACTION_DEFINITIONS: list[ActionDefinition] = [
    # Jobs
    ActionDefinition(
        ActionName.CREATE_JOB,
        "{name, revenue, status?, clientName?, address?, description?, startDate?, endDate?}",
        "Créer un contrat. Le revenu doit être supérieur à zéro.",
    ),
    ActionDefinition(
        ActionName.UPDATE_JOB,
        "{jobId?, jobName?, updates:{name?, clientName?, address?, description?, status?, "
        "startDate?, endDate?, revenue?}}",
        "Modifier un contrat. Mets SEULEMENT les champs modifiés dans « updates ». "
        "Les dépenses et le profit se recalculent automatiquement.",
    ),
    ActionDefinition(
        ActionName.UPDATE_JOB_STATUS,
        "{jobId?, jobName?, status}",
        "Changer seulement le statut (En cours, Terminé, Payé).",
    ),
    ActionDefinition(
        ActionName.DELETE_JOB,
        "{jobId?, jobName?}",
        "Supprimer un contrat et ses dépenses liées.",
    ),
    # Expenses
    ActionDefinition(
        ActionName.CREATE_EXPENSE,
        "{name, amount, category, date?, jobId?, jobName?, vendor?, notes?, receiptPath?}",
        "Créer une dépense, liée ou non à un contrat.",
    ),
    ActionDefinition(
        ActionName.UPDATE_EXPENSE,
        "{expenseId?, expenseName?, updates:{name?, amount?, category?, date?, jobId?, "
        "vendor?, notes?}}",
        "Modifier une dépense. Le montant doit rester supérieur à zéro.",
    ),
    ActionDefinition(
        ActionName.DELETE_EXPENSE,
        "{expenseId?, expenseName?}",
        "Supprimer une dépense.",
    ),
    ActionDefinition(
        ActionName.ATTACH_EXPENSE,
        "{expenseId?, expenseName?, jobId?, jobName?}",
        "Associer une dépense à un contrat.",
    ),
    ActionDefinition(
        ActionName.DETACH_EXPENSE,
        "{expenseId?, expenseName?}",
        "Retirer une dépense de son contrat.",
    ),
    # Categories
    ActionDefinition(ActionName.CREATE_CATEGORY, "{name}", "Créer une catégorie."),
    ActionDefinition(
        ActionName.RENAME_CATEGORY,
        "{categoryName, nextName}",
        "Renommer une catégorie et ses dépenses.",
    ),
    ActionDefinition(
        ActionName.DELETE_CATEGORY,
        "{categoryName}",
        "Supprimer une catégorie; ses dépenses passent dans « Autre ».",
    ),
    # Notifications
    ActionDefinition(
        ActionName.CREATE_NOTIFICATION,
        "{message, type?, jobId?, jobName?}",
        "Créer un rappel ou une notification.",
    ),
    ActionDefinition(
        ActionName.MARK_NOTIFICATION_READ,
        "{notificationId?, notificationMessage?}",
        "Marquer une notification comme lue.",
    ),
    ActionDefinition(
        ActionName.DELETE_NOTIFICATION,
        "{notificationId?, notificationMessage?}",
        "Supprimer une notification.",
    ),
    ActionDefinition(
        ActionName.QUERY,
        "{}",
        "Question analytique sans modification.",
    ),
]


def parse_action_name(value: Any) -> ActionName | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip().lower()
    if candidate in LEGACY_ACTION_NAMES:
        return LEGACY_ACTION_NAMES[candidate]
    try:
        return ActionName(candidate)
    except ValueError:
        return None


def sanitize_action(raw: Any) -> ModelAction:
    """Validate one ``{action, data?, confirmationMessage?}`` object.

    Raises ValidationError for anything outside the catalogue.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Action IA invalide.")
    name = parse_action_name(raw.get("action"))
    if name is None:
        label = raw.get("action") if isinstance(raw.get("action"), str) else ""
        raise ValidationError(
            f"Action IA « {label.strip()} » non prise en charge." if label else "Action IA invalide.",
            details={"action": raw.get("action")},
        )
    data = raw.get("data")
    return ModelAction(
        name=name,
        data=dict(data) if isinstance(data, dict) else {},
        confirmation_message=normalize_nullable_string(raw.get("confirmationMessage")),
    )


def sanitize_actions(raw: Any) -> list[ModelAction]:
    """Strict variant for the action-execution endpoint: one bad entry fails all."""
    if not isinstance(raw, list):
        raise ValidationError("Le format des actions IA est invalide.")
    return [sanitize_action(item) for item in raw]


def sanitize_actions_lenient(raw: Any) -> list[ModelAction]:
    """Model-output variant: unsupported or malformed entries are dropped."""
    if not isinstance(raw, list):
        return []
    actions: list[ModelAction] = []
    for item in raw:
        try:
            actions.append(sanitize_action(item))
        except ValidationError:
            logger.warning("action_dropped", raw=str(item)[:200])
    return actions
