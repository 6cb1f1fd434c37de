"""Provider-agnostic model client interface and shared helpers."""

from dataclasses import dataclass, field
from typing import Any, Protocol

from fiscalia.errors import ProviderError, ProviderTimeoutError

QUOTA_MESSAGE = (
    "Limite d'utilisation atteinte pour le modèle IA. "
    "Réessaie plus tard ou configure un autre modèle."
)
CREDITS_MESSAGE = (
    "Crédits insuffisants pour le modèle IA. "
    "Recharge ton compte ou configure un autre modèle."
)
TIMEOUT_MESSAGE = "Le modèle IA a pris trop de temps à répondre."
EMPTY_RESPONSE_MESSAGE = "Le modèle IA a renvoyé une réponse vide."


@dataclass
class ModelResponse:
    """Response from any model provider."""

    content: str
    stop_reason: str
    usage: dict[str, int] = field(default_factory=dict)
    model: str | None = None


class ModelClient(Protocol):
    """What the orchestrator needs from a model backend."""

    async def generate(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse: ...

    async def close(self) -> None: ...


def merge_consecutive_roles(messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Strict user/assistant alternation starting with a user turn.

    Consecutive user turns are merged; consecutive assistant turns keep the
    first one. Roles other than user/assistant are dropped.
    """
    merged: list[dict[str, str]] = []
    for message in messages:
        role = message.get("role")
        content = str(message.get("content") or "")
        if role not in ("user", "assistant") or not content:
            continue
        if not merged:
            if role == "assistant":
                continue
            merged.append({"role": role, "content": content})
        elif merged[-1]["role"] != role:
            merged.append({"role": role, "content": content})
        elif role == "user":
            merged[-1]["content"] += f"\n\n{content}"
    return merged


def embed_system_prompt(system_prompt: str, messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """For servers without a system role: system prompt goes into the first user turn.

    A leading assistant turn is kept behind a user turn carrying only the
    system prompt.
    """
    leading_assistant = next(
        (
            str(m.get("content") or "")
            for m in messages[:1]
            if m.get("role") == "assistant" and m.get("content")
        ),
        None,
    )
    alternated = merge_consecutive_roles(messages)
    if leading_assistant is not None:
        return [
            {"role": "user", "content": system_prompt},
            {"role": "assistant", "content": leading_assistant},
            *alternated,
        ]
    if not alternated:
        return [{"role": "user", "content": system_prompt}]
    first = alternated[0]
    return [{"role": "user", "content": f"{system_prompt}\n\n{first['content']}"}, *alternated[1:]]


def provider_error(provider: str, status: int | None, message: str) -> ProviderError:
    """Map a provider HTTP failure to a user-facing ProviderError."""
    lowered = message.lower()
    details = {"provider": provider, "status": status, "message": message[:500]}
    if "credit" in lowered:
        return ProviderError(CREDITS_MESSAGE, details=details)
    if status == 429 or "rate limit" in lowered or "quota" in lowered:
        return ProviderError(QUOTA_MESSAGE, details=details)
    if status in (401, 403):
        return ProviderError(
            "Le fournisseur IA a refusé l'authentification. Vérifie la clé API.",
            details=details,
        )
    if status == 404:
        return ProviderError(
            f"Modèle introuvable chez {provider}. Vérifie que le modèle est disponible.",
            details=details,
        )
    if status is not None and status >= 500:
        return ProviderError(
            f"{provider} n'est pas disponible pour le moment.",
            details=details,
            retryable=True,
        )
    return ProviderError("Erreur du fournisseur IA.", details=details)


def connection_error(provider: str, error: Exception) -> ProviderError:
    return ProviderError(
        f"Impossible de se connecter à {provider}. Vérifie que le service est accessible.",
        code="ERR_4000",
        details={"provider": provider, "error": str(error)},
        retryable=True,
    )


def timeout_error(provider: str, error: Exception) -> ProviderTimeoutError:
    return ProviderTimeoutError(TIMEOUT_MESSAGE, details={"provider": provider, "error": str(error)})


def empty_response_error(provider: str, model: str) -> ProviderError:
    return ProviderError(EMPTY_RESPONSE_MESSAGE, details={"provider": provider, "model": model})
