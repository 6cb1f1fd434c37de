"""Input normalisation helpers applied at the repository boundary."""

import math
import re
import uuid
from datetime import date, datetime
from typing import Any

from fiscalia.errors import ValidationError

DEFAULT_CATEGORY = "Autre"
MAX_CATEGORY_LENGTH = 50

_TAG_RE = re.compile(r"<[^>]*>")
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=\s*[\"'][^\"']*[\"']", re.IGNORECASE)
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_DATA_HTML_RE = re.compile(r"data:text/html", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DECIMAL_COMMA_RE = re.compile(r"-?\d+,\d{1,2}")
_INTERNAL_ID_RE = re.compile(r"^(exp|job|notif|conv|cat)-[a-f0-9-]{30,}$", re.IGNORECASE)

_DATE_FORMATS = ("%d/%m/%Y", "%Y/%m/%d", "%d-%m-%Y", "%d.%m.%Y")


def sanitize_string(value: str) -> str:
    """Strip markup and script fragments from free text."""
    if not value:
        return ""
    cleaned = _TAG_RE.sub("", value)
    cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
    cleaned = _JS_PROTOCOL_RE.sub("", cleaned)
    cleaned = _DATA_HTML_RE.sub("", cleaned)
    return cleaned.strip()


def normalize_nullable_string(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = sanitize_string(str(value))
    return cleaned or None


def normalize_date(value: Any) -> str | None:
    """Return an ISO ``YYYY-MM-DD`` string, or None when the input is not a date."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    candidate = normalize_nullable_string(value)
    if not candidate:
        return None
    if _ISO_DATE_RE.match(candidate):
        try:
            return date.fromisoformat(candidate).isoformat()
        except ValueError:
            return None
    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_amount(value: Any) -> float:
    """Parse a currency amount such as ``1200``, ``"$1,200.50"`` or ``"1 200,50 $"``.

    Returns NaN when the value cannot be read as a number.
    """
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, int | float):
        return float(value)
    if not isinstance(value, str):
        return math.nan
    cleaned = re.sub(r"[$\s]", "", value)
    # A comma is a decimal mark only before one or two trailing digits.
    if _DECIMAL_COMMA_RE.fullmatch(cleaned):
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return math.nan


def ensure_positive_amount(value: Any, message: str) -> float:
    """Parse ``value`` and require a finite amount strictly greater than zero."""
    amount = parse_amount(value)
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(message, details={"value": value})
    return round(amount, 2)


def normalize_category(value: Any) -> str:
    """Category name for an expense, falling back to ``Autre``.

    Models sometimes put an entity id or a sentence where a category belongs;
    both are replaced by the default category.
    """
    name = normalize_nullable_string(value)
    if not name or _INTERNAL_ID_RE.match(name) or len(name) > MAX_CATEGORY_LENGTH:
        return DEFAULT_CATEGORY
    return name


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


def today_iso() -> str:
    return date.today().isoformat()
