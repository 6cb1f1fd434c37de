"""Best-effort detection of recently created or deleted entities from chat history.

Phrases like « le contrat Plomberie Laval a été supprimé » or "expense Tools
was added" are collected from the last turns, then checked against the
current snapshot: a named entity that still exists is reported as recently
created (with its current id), one that no longer exists as recently deleted.
A name that was deleted and exists again is flagged ``recreated`` so the
prompt can point the model at the current record.

Phrasings outside these patterns are missed and unrelated sentences can
match; the output is a hint for the model, never an input to the executor.
"""

import re
from dataclasses import dataclass
from typing import Any, Literal

import structlog

from fiscalia.models import FinancialSnapshot
from fiscalia.orchestration.aliases import AliasTable

logger = structlog.get_logger(__name__)

EntityKind = Literal["job", "expense"]

_ENTITY = r"(?P<entity>contrat|job|d[ée]pense|expense)"
_PARTICIPLE = (
    r"(?P<verb>(?:supprim|effac|retir|ajout|enregistr)[ée](?:e|s|es)?"
    r"|cr[ée][ée](?:e|s|es)?|deleted|removed|created|added)"
)
_AUX = r"(?:(?:a|ont|est|sont|a\s+bien|est\s+bien)\s+(?:été\s+)?|été\s+|(?:was|has\s+been|is|is\s+now|have\s+been)\s+)?"
_NAME = r"(?:«\s*(?P<q1>[^»]+?)\s*»|\"(?P<q2>[^\"]+)\"|“(?P<q3>[^”]+)”|(?P<bare>[^\n.!?,;:«»\"]+?))"

# <entity> <name> <verb>: « le contrat X a été supprimé »
ENTITY_NAME_VERB_RE = re.compile(
    rf"\b{_ENTITY}\s+{_NAME}\s+{_AUX}{_PARTICIPLE}(?!\w)",
    re.IGNORECASE,
)
# <verb> <entity> <name>: « j'ai supprimé le contrat X »
VERB_ENTITY_NAME_RE = re.compile(
    rf"{_PARTICIPLE}\s+(?:(?:le|la|les|l'|un|une|the|a|an)\s*)?{_ENTITY}\s+{_NAME}(?=[\n.!?,;:]|$)",
    re.IGNORECASE,
)

_CONNECTOR_RE = re.compile(
    r"\s+(?:avec|pour|au|aux|à|dont|qui|with|for|of|at|de\s+\d|d'un|d'une)\b.*$",
    re.IGNORECASE,
)
_DELETE_PREFIXES = ("supprim", "effac", "retir", "deleted", "removed")


@dataclass
class StateChange:
    kind: EntityKind
    name: str
    status: Literal["created", "deleted"]
    entity_id: str | None = None
    token: str | None = None
    recreated: bool = False


@dataclass
class _Mention:
    kind: EntityKind
    name: str
    deleted: bool
    position: int


def _kind(entity: str) -> EntityKind:
    return "job" if entity.lower() in ("contrat", "job") else "expense"


def _clean_name(raw: str, known_names: list[str]) -> str:
    candidate = raw.strip().strip("'\"")
    lowered = candidate.lower()
    # Prefer a known entity name when the capture starts with one.
    for name in sorted(known_names, key=len, reverse=True):
        if lowered.startswith(name.lower()) and (
            len(candidate) == len(name) or not candidate[len(name)].isalnum()
        ):
            return candidate[: len(name)]
    return _CONNECTOR_RE.sub("", candidate).strip()


def _mentions(text: str, position: int, known_names: list[str]) -> list[_Mention]:
    found: list[_Mention] = []
    for pattern in (ENTITY_NAME_VERB_RE, VERB_ENTITY_NAME_RE):
        for match in pattern.finditer(text):
            raw = next(
                (match.group(g) for g in ("q1", "q2", "q3", "bare") if match.group(g)), ""
            )
            name = _clean_name(raw, known_names)
            if not name or len(name) > 80:
                continue
            verb = match.group("verb").lower()
            found.append(
                _Mention(
                    kind=_kind(match.group("entity")),
                    name=name,
                    deleted=verb.startswith(_DELETE_PREFIXES),
                    position=position,
                )
            )
    return found


def extract_state_changes(
    history: list[dict[str, Any]],
    snapshot: FinancialSnapshot,
    aliases: AliasTable | None = None,
    window: int = 10,
) -> list[StateChange]:
    """Classify entities named in the last ``window`` messages against ``snapshot``."""
    jobs_by_name: dict[str, Any] = {}
    for job in snapshot.jobs:
        jobs_by_name[job.name.lower()] = job
    expenses_by_name: dict[str, Any] = {}
    for expense in snapshot.expenses:
        expenses_by_name[expense.name.lower()] = expense
    known_names = [job.name for job in snapshot.jobs] + [e.name for e in snapshot.expenses]

    mentions: list[_Mention] = []
    recent = history[-window:] if window > 0 else []
    for position, message in enumerate(recent):
        content = message.get("content")
        if isinstance(content, str) and content:
            mentions.extend(_mentions(content, position, known_names))

    grouped: dict[tuple[EntityKind, str], list[_Mention]] = {}
    for mention in mentions:
        grouped.setdefault((mention.kind, mention.name.lower()), []).append(mention)

    changes: list[StateChange] = []
    for (kind, lowered), group in grouped.items():
        latest = max(group, key=lambda m: m.position)
        current = (jobs_by_name if kind == "job" else expenses_by_name).get(lowered)
        if current is None:
            changes.append(StateChange(kind=kind, name=latest.name, status="deleted"))
            continue
        changes.append(
            StateChange(
                kind=kind,
                name=current.name,
                status="created",
                entity_id=current.id,
                token=aliases.token_for(current.id) if aliases else None,
                recreated=any(m.deleted for m in group),
            )
        )

    if changes:
        logger.debug(
            "state_changes_extracted",
            created=sum(1 for c in changes if c.status == "created"),
            deleted=sum(1 for c in changes if c.status == "deleted"),
        )
    return changes
