"""Turn raw model text into a reply sentence and a list of actions.

The model is asked for ``{"text": ..., "actions": [...]}`` but may wrap it in
markdown, surround it with prose, emit broken JSON or answer in plain text.
Each step below is a fallback for the previous one:

1. JSON object inside a fenced code block.
2. First balanced ``{...}`` object in the text.
3. ``json.loads``, then ``json_repair``; a plain-text reply with no
   structural characters is salvaged as-is, anything else gets an apology.
4. The reply text is scored (0-100) against the quality rubric.
5. A reply below the acceptance score is replaced by a synthesized
   confirmation when actions are present.
6. A reply still below the hard floor after cleanup is replaced by a canned
   sentence and its actions are dropped.

The returned text is never empty.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog
from json_repair import repair_json

from fiscalia.errors import QualityTooLowError
from fiscalia.orchestration.actions import ActionName, ModelAction, sanitize_actions_lenient

logger = structlog.get_logger(__name__)

FallbackContext = Literal["general", "financial", "creation", "deletion", "query"]
ReplySource = Literal["model", "synthesized", "salvaged", "fallback"]

DEFAULT_MIN_SCORE = 70
DEFAULT_FLOOR = 40
DEFAULT_MAX_LENGTH = 1000
SALVAGE_MIN_LENGTH = 10
ENVELOPE_KEYS = frozenset({"text", "actions", "action"})

FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)

FALLBACK_MESSAGES: dict[str, str] = {
    "general": "Désolée, je n'ai pas pu traiter ta demande correctement. Peux-tu la reformuler?",
    "financial": (
        "J'ai des difficultés techniques avec cette opération financière. "
        "Réessaie dans un instant."
    ),
    "creation": (
        "Je n'ai pas pu créer cet élément pour le moment. "
        "Vérifie les informations et réessaie."
    ),
    "deletion": "Je n'ai pas pu supprimer cet élément. Réessaie dans un instant.",
    "query": "Je n'ai pas pu obtenir les informations demandées. Peux-tu reformuler ta question?",
}

CONFIRMATION_PHRASES: dict[ActionName, str] = {
    ActionName.CREATE_JOB: "Contrat créé avec succès!",
    ActionName.UPDATE_JOB: "Contrat mis à jour.",
    ActionName.UPDATE_JOB_STATUS: "Statut du contrat mis à jour.",
    ActionName.DELETE_JOB: "Contrat supprimé.",
    ActionName.CREATE_EXPENSE: "Dépense ajoutée.",
    ActionName.UPDATE_EXPENSE: "Dépense mise à jour.",
    ActionName.DELETE_EXPENSE: "Dépense supprimée.",
    ActionName.ATTACH_EXPENSE: "Dépense associée au contrat.",
    ActionName.DETACH_EXPENSE: "Dépense retirée du contrat.",
    ActionName.CREATE_CATEGORY: "Catégorie créée.",
    ActionName.RENAME_CATEGORY: "Catégorie renommée.",
    ActionName.DELETE_CATEGORY: "Catégorie supprimée.",
    ActionName.CREATE_NOTIFICATION: "Rappel créé.",
    ActionName.MARK_NOTIFICATION_READ: "Notification marquée comme lue.",
    ActionName.DELETE_NOTIFICATION: "Notification supprimée.",
}
DEFAULT_CONFIRMATION = "Action effectuée."
SHORT_REPLY_WITH_ACTIONS = "Compris, c'est fait!"
SHORT_REPLY = "Je suis là pour t'aider. Qu'est-ce que je peux faire pour toi?"

TECHNICAL_TERMS = ("error", "failed", "exception", "null", "undefined", "database")
FRENCH_INDICATORS = ("je", "tu", "vous", "nous", "est", "sont", "le", "la", "les", "à")
FORBIDDEN_MARKERS = ("action:", '"action"', "data:", '"data"')

_CONTEXT_KEYWORDS: list[tuple[FallbackContext, tuple[str, ...]]] = [
    ("deletion", ("supprim", "efface", "retire", "enlève", "delete", "remove")),
    ("creation", ("crée", "créer", "cree", "ajoute", "nouveau", "nouvelle", "create", "add")),
    ("query", ("combien", "quel", "quelle", "montre", "liste", "résumé", "how much", "?")),
    ("financial", ("$", "montant", "revenu", "profit", "dépense", "depense", "paie", "facture")),
]


@dataclass
class Interpretation:
    """Outcome of interpreting one model reply."""

    text: str
    actions: list[ModelAction] = field(default_factory=list)
    score: int = 0
    source: ReplySource = "model"

    @property
    def fallback_used(self) -> bool:
        return self.source == "fallback"


@dataclass
class QualityReport:
    score: int
    is_valid: bool
    issues: list[str] = field(default_factory=list)


# === Extraction ===


def _balanced_object(text: str) -> str | None:
    """First brace-balanced ``{...}`` substring, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    # Unbalanced from here: hand the tail to the repair step.
    return text[start:]


def extract_json_candidate(raw: str) -> str | None:
    """Fenced block first, then the first balanced object."""
    fenced = FENCED_JSON_RE.search(raw)
    if fenced:
        return fenced.group(1)
    return _balanced_object(raw)


def parse_json_object(candidate: str) -> dict[str, Any] | None:
    """``json.loads``, falling back to ``json_repair``; non-objects yield None."""
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        repaired = repair_json(candidate)
        try:
            parsed = json.loads(repaired)
        except json.JSONDecodeError:
            return None
        logger.debug("model_json_repaired")
    return parsed if isinstance(parsed, dict) else None


# === Quality rubric ===


def score_response(text: str, actions: list[Any] | None = None) -> int:
    """Heuristic 0-100 rating of a reply sentence."""
    score = 100
    stripped = text.strip()
    if len(stripped) < 10:
        score -= 50
    elif len(stripped) < 20:
        score -= 30

    if "{" in text or "[" in text or "```" in text:
        score -= 40
    if not re.search(r"[.!?]\s*$", stripped):
        score -= 15

    lowered = text.lower()
    if any(re.search(rf"\b{term}\b", lowered) for term in TECHNICAL_TERMS):
        score -= 20

    padded = f" {lowered} "
    bonus = sum(3 for word in FRENCH_INDICATORS if f" {word} " in padded)
    score += min(bonus, 20)

    for action in actions or []:
        name = action.get("action") if isinstance(action, dict) else None
        if not isinstance(name, str):
            score -= 15

    return max(0, min(100, score))


def is_proper_french_text(text: str) -> bool:
    """Reject replies that still carry structure or action syntax."""
    stripped = text.strip()
    if len(stripped) < 3:
        return False
    if "{" in stripped or "[" in stripped or "`" in stripped:
        return False
    if len(stripped) >= 2 and stripped[0] in "\"'" and stripped[-1] == stripped[0]:
        return False
    lowered = stripped.lower()
    return not any(marker in lowered for marker in FORBIDDEN_MARKERS)


def validate_response(
    text: str,
    actions: list[Any] | None = None,
    min_score: int = DEFAULT_MIN_SCORE,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> QualityReport:
    issues: list[str] = []
    score = score_response(text, actions)
    if score < min_score:
        issues.append(f"score {score} < {min_score}")
    if len(text) > max_length:
        issues.append("too_long")
    if not is_proper_french_text(text):
        issues.append("structural_artifacts")
    return QualityReport(score=score, is_valid=not issues, issues=issues)


# === Cleanup ===


def sanitize_reply_text(text: str) -> str:
    """Strip code, JSON fragments and brackets; ensure ending punctuation."""
    cleaned = re.sub(r"```[\s\S]*?```", " ", text)
    cleaned = re.sub(r"`[^`]*`", " ", cleaned)
    cleaned = re.sub(r"\{[^{}]*\}", " ", cleaned)
    cleaned = re.sub(r"\[[^\[\]]*\]", " ", cleaned)
    cleaned = re.sub(r"[{}\[\]`]", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if cleaned and not re.search(r"[.!?]$", cleaned):
        cleaned += "."
    return cleaned


def synthesize_confirmation(actions: list[ModelAction]) -> str:
    """One sentence per action, from its confirmation message or the phrase table."""
    sentences: list[str] = []
    for action in actions:
        if action.confirmation_message:
            sentence = action.confirmation_message
        elif action.name == ActionName.QUERY:
            continue
        else:
            sentence = CONFIRMATION_PHRASES.get(action.name, DEFAULT_CONFIRMATION)
        if sentence not in sentences:
            sentences.append(sentence)
    return " ".join(sentences)


def fallback_context(prompt: str | None, actions: list[ModelAction] | None = None) -> FallbackContext:
    """Pick the canned-sentence family from the requested actions or the user prompt."""
    for action in actions or []:
        if action.name.value.startswith("delete_"):
            return "deletion"
        if action.name.value.startswith("create_"):
            return "creation"
        if action.name == ActionName.QUERY:
            return "query"
    lowered = (prompt or "").lower()
    for context, keywords in _CONTEXT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return context
    return "general"


def fallback_response(context: FallbackContext = "general") -> str:
    return FALLBACK_MESSAGES.get(context, FALLBACK_MESSAGES["general"])


# === Pipeline ===


def _salvage_plain_text(raw: str) -> str | None:
    if "{" in raw or "[" in raw:
        return None
    cleaned = sanitize_reply_text(raw)
    return cleaned if len(cleaned) > SALVAGE_MIN_LENGTH else None


def interpret_response(
    raw: str,
    prompt: str | None = None,
    min_score: int = DEFAULT_MIN_SCORE,
    floor: int = DEFAULT_FLOOR,
    max_length: int = DEFAULT_MAX_LENGTH,
    raise_on_reject: bool = False,
) -> Interpretation:
    """Extract, validate and repair one model reply.

    ``prompt`` (the user's message) only selects which canned sentence to
    use when the reply cannot be salvaged. With ``raise_on_reject`` a reply
    below ``floor`` raises QualityTooLowError instead.
    """
    raw = (raw or "").strip()
    candidate = extract_json_candidate(raw) if raw else None
    parsed = parse_json_object(candidate) if candidate else None
    if parsed is not None and not ENVELOPE_KEYS & parsed.keys():
        parsed = None

    if parsed is None:
        salvaged = _salvage_plain_text(raw)
        if salvaged is not None:
            score = score_response(salvaged)
            if score >= floor:
                logger.info("model_reply_salvaged", score=score, length=len(salvaged))
                return Interpretation(text=salvaged, score=score, source="salvaged")
        logger.warning("model_reply_unparseable", length=len(raw), preview=raw[:120])
        return Interpretation(
            text=fallback_response(fallback_context(prompt)), score=0, source="fallback"
        )

    raw_actions = parsed.get("actions")
    if raw_actions is None and isinstance(parsed.get("action"), str):
        # A lone action object instead of the envelope.
        raw_actions = [parsed]
    if raw_actions is not None and not isinstance(raw_actions, list):
        raw_actions = [raw_actions]
    actions = sanitize_actions_lenient(raw_actions or [])

    text_value = parsed.get("text")
    text = text_value.strip() if isinstance(text_value, str) else ""
    source: ReplySource = "model"

    report = validate_response(text, raw_actions, min_score=min_score, max_length=max_length)
    if not report.is_valid:
        logger.info("response_quality", score=report.score, issues=report.issues)
        if actions:
            synthesized = synthesize_confirmation(actions)
            cleaned = sanitize_reply_text(text)
            if synthesized:
                text, source = synthesized, "synthesized"
            elif len(cleaned) > SALVAGE_MIN_LENGTH:
                text = cleaned
            else:
                text, source = DEFAULT_CONFIRMATION, "synthesized"
        else:
            text = sanitize_reply_text(text)

    if len(text.strip()) < 3:
        text = SHORT_REPLY_WITH_ACTIONS if actions else SHORT_REPLY
        source = "synthesized"

    text = sanitize_reply_text(text)
    if len(text) > max_length:
        text = text[:max_length].rsplit(" ", 1)[0].rstrip(",;:") + "..."

    final_score = score_response(text)
    if final_score < floor:
        logger.warning(
            "model_reply_rejected",
            score=final_score,
            floor=floor,
            dropped_actions=len(actions),
        )
        if raise_on_reject:
            raise QualityTooLowError(
                "La réponse de l'IA était inutilisable. Peux-tu reformuler ta demande?",
                details={"score": final_score, "floor": floor},
            )
        return Interpretation(
            text=fallback_response(fallback_context(prompt, actions)),
            score=final_score,
            source="fallback",
        )

    logger.debug(
        "model_reply_interpreted",
        score=final_score,
        source=source,
        actions=[action.name.value for action in actions],
    )
    return Interpretation(text=text, actions=actions, score=final_score, source=source)
