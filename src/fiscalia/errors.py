"""Error taxonomy shared by the repository, orchestration and HTTP layers.

Every message carried by a ``FiscaliaError`` is user-facing French text.
Internal details (raw provider or store errors) travel in ``details`` and
are only logged.
"""

import asyncio
from typing import Any

import httpx

GENERIC_ERROR_MESSAGE = "Une erreur inattendue s'est produite. Réessaie dans un instant."


class FiscaliaError(Exception):
    """Base exception for every error surfaced to a caller."""

    status_code: int = 500
    code: str = "ERR_9999"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(FiscaliaError):
    """A field is missing or invalid."""

    status_code = 400
    code = "ERR_1000"


class OwnershipError(FiscaliaError):
    """The id belongs to another user."""

    status_code = 403
    code = "ERR_2003"


class NotFoundError(FiscaliaError):
    """An entity reference could not be resolved."""

    status_code = 404
    code = "ERR_3001"


class PersistenceError(FiscaliaError):
    """The persistent store rejected or failed a request."""

    status_code = 500
    code = "ERR_3000"


class QualityTooLowError(FiscaliaError):
    """The model reply was rejected after every repair attempt."""

    status_code = 502
    code = "ERR_5001"


class ProviderError(FiscaliaError):
    """The model backend failed (auth, quota, bad response, outage)."""

    status_code = 502
    code = "ERR_5000"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
        retryable: bool = False,
    ):
        super().__init__(message, status_code=status_code, code=code, details=details)
        self.retryable = retryable


class ProviderTimeoutError(ProviderError):
    """The model backend did not answer in time."""

    status_code = 504
    code = "ERR_4001"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, details=details, retryable=True)


class RateLimitExceededError(FiscaliaError):
    """Too many requests for one (user, endpoint) window."""

    status_code = 429
    code = "ERR_5002"

    def __init__(self, retry_after: int, details: Any = None):
        super().__init__(
            f"Limite de taux dépassée. Réessayez dans {retry_after} secondes.",
            details=details,
        )
        self.retry_after = retry_after


class CircuitOpenError(FiscaliaError):
    """The circuit breaker rejects calls during its cooldown."""

    status_code = 503
    code = "ERR_4002"

    def __init__(self, retry_after: int):
        super().__init__(
            "Le service d'IA est temporairement indisponible. "
            f"Réessaie dans {retry_after} secondes."
        )
        self.retry_after = retry_after


class ActionExecutionError(FiscaliaError):
    """A turn failed part-way; carries the execution log and mutation flag."""

    def __init__(
        self,
        message: str,
        log: list[Any],
        mutated: bool,
        cause: FiscaliaError | None = None,
        details: Any = None,
    ):
        super().__init__(
            message,
            status_code=cause.status_code if cause else 500,
            code=cause.code if cause else None,
            details=details,
        )
        self.log = log
        self.mutated = mutated
        self.cause = cause


def normalise_error(exc: BaseException) -> FiscaliaError:
    """Map any exception to a FiscaliaError with a user-facing message."""
    if isinstance(exc, FiscaliaError):
        return exc
    if isinstance(exc, asyncio.TimeoutError | httpx.TimeoutException):
        return ProviderTimeoutError(
            "Le service a mis trop de temps à répondre. Réessaie dans un instant.",
            details=str(exc),
        )
    if isinstance(exc, httpx.TransportError):
        return ProviderError(
            "Impossible de joindre le service. Vérifie ta connexion et réessaie.",
            code="ERR_4000",
            details=str(exc),
            retryable=True,
        )
    return FiscaliaError(GENERIC_ERROR_MESSAGE, details=repr(exc))


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: network, timeout and transient outages."""
    if isinstance(exc, ProviderError):
        return exc.retryable
    if isinstance(exc, FiscaliaError):
        return False
    return isinstance(exc, asyncio.TimeoutError | httpx.TransportError)
