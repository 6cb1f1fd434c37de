"""Turn-scoped alias codec between entity names/ids and ``JOB_nn``/``EXP_nn`` tokens.

An ``AliasTable`` is rebuilt from the current snapshot on every turn and passed
explicitly through the pipeline; tokens mean nothing outside that turn.
"""

import re
from dataclasses import dataclass
from typing import Any, Literal

from fiscalia.models import Expense, Job

TOKEN_RE = re.compile(r"\b(?:JOB|EXP)_\d{2,}\b", re.IGNORECASE)

# Action keys whose plain-text values name an entity rather than describe one.
REFERENCE_KEYS = frozenset({"jobid", "jobname", "expenseid", "expensename"})
# A token under a name key also fills the matching id key when that one is empty.
_PINNED_ID_KEYS = {"jobname": ("jobId", "job"), "expensename": ("expenseId", "expense")}

MIN_NAME_LENGTH = 2


@dataclass(frozen=True)
class AliasEntry:
    entity_id: str
    display_name: str
    token: str
    kind: Literal["job", "expense"]


def _token(prefix: str, index: int) -> str:
    return f"{prefix}_{index:02d}"


def _wants(key: str | None) -> Literal["name", "alias", "id"]:
    if not key:
        return "id"
    lowered = key.lower()
    if "name" in lowered or "title" in lowered or "label" in lowered:
        return "name"
    if "alias" in lowered:
        return "alias"
    return "id"


class AliasTable:
    """Bidirectional mapping for one orchestration turn."""

    def __init__(self, entries: list[AliasEntry]):
        self.entries = entries
        self._by_token = {entry.token: entry for entry in entries}
        self._by_id = {entry.entity_id: entry for entry in entries}

        # Jobs win over expenses, newer entries over older ones, on equal names.
        by_name: dict[str, AliasEntry] = {}
        for entry in [e for e in entries if e.kind == "expense"] + [
            e for e in entries if e.kind == "job"
        ]:
            if len(entry.display_name.strip()) >= MIN_NAME_LENGTH:
                by_name[entry.display_name.lower()] = entry
        self._by_name = by_name

        names = sorted(by_name, key=len, reverse=True)
        self._name_re = (
            re.compile(
                r"(?<!\w)(" + "|".join(re.escape(name) for name in names) + r")(?!\w)",
                re.IGNORECASE,
            )
            if names
            else None
        )

    @classmethod
    def build(cls, jobs: list[Job], expenses: list[Expense]) -> "AliasTable":
        """One token per job then per expense, in snapshot order."""
        entries = [
            AliasEntry(
                entity_id=job.id,
                display_name=job.name or f"Contrat {index}",
                token=_token("JOB", index),
                kind="job",
            )
            for index, job in enumerate(jobs, start=1)
        ]
        entries.extend(
            AliasEntry(
                entity_id=expense.id,
                display_name=expense.name or f"Dépense {index}",
                token=_token("EXP", index),
                kind="expense",
            )
            for index, expense in enumerate(expenses, start=1)
        )
        return cls(entries)

    def __len__(self) -> int:
        return len(self.entries)

    def token_for(self, entity_id: str) -> str | None:
        entry = self._by_id.get(entity_id)
        return entry.token if entry else None

    def lookup_token(self, token: str) -> AliasEntry | None:
        return self._by_token.get(token.upper())

    def lookup_name(self, name: str) -> AliasEntry | None:
        return self._by_name.get(name.strip().lower())

    # === Text ===

    def encode(self, text: str) -> str:
        """Replace every whole-word occurrence of a display name with its token."""
        if not text or self._name_re is None:
            return text
        return self._name_re.sub(lambda m: self._by_name[m.group(1).lower()].token, text)

    def decode(self, text: str) -> str:
        """Replace known tokens with display names; unknown tokens are left as-is."""
        if not text:
            return text

        def replace(match: re.Match[str]) -> str:
            entry = self.lookup_token(match.group(0))
            return entry.display_name if entry else match.group(0)

        return TOKEN_RE.sub(replace, text)

    @staticmethod
    def strip_tokens(text: str) -> str:
        """Remove any leftover token from user-facing text."""
        cleaned = TOKEN_RE.sub("", text)
        cleaned = re.sub(r"\(\s*\)", "", cleaned)
        cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
        return re.sub(r"\s+([,.!?])", r"\1", cleaned).strip()

    # === Action payloads ===

    def _resolve(self, entry: AliasEntry, key: str | None) -> str:
        wanted = _wants(key)
        if wanted == "name":
            return entry.display_name
        if wanted == "alias":
            return entry.token
        return entry.entity_id

    def _restore_value(self, value: Any, key: str | None) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            entry = self.lookup_token(stripped) if TOKEN_RE.fullmatch(stripped) else None
            if entry is None and key and key.lower() in REFERENCE_KEYS:
                entry = self.lookup_name(stripped)
            if entry is not None:
                return self._resolve(entry, key)
            return self.decode(value)
        if isinstance(value, list):
            return [self._restore_value(item, key) for item in value]
        if isinstance(value, dict):
            return self._restore_mapping(value)
        return value

    def _restore_mapping(self, data: dict[str, Any]) -> dict[str, Any]:
        restored = {key: self._restore_value(value, key) for key, value in data.items()}
        for key, value in data.items():
            pinned = _PINNED_ID_KEYS.get(key.lower())
            if pinned is None or not isinstance(value, str):
                continue
            id_key, kind = pinned
            token = value.strip()
            entry = self.lookup_token(token) if TOKEN_RE.fullmatch(token) else None
            if entry is not None and entry.kind == kind and not restored.get(id_key):
                restored[id_key] = entry.entity_id
        return restored

    def restore_data(self, data: dict[str, Any]) -> dict[str, Any]:
        """Map tokens (and names under reference keys) back to ids or names.

        A key that mentions name/title/label receives the display name, a key
        that mentions alias keeps the token, any other key receives the id.
        A token under ``jobName``/``expenseName`` also fills an empty
        ``jobId``/``expenseId``.
        """
        return self._restore_mapping(data)
