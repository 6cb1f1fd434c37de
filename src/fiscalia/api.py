"""HTTP surface: chat, action execution and memory refresh endpoints.

Authentication happens upstream; the caller's identity arrives in the
``X-User-Id`` header. Every response carries the turn's correlation id.
"""

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fiscalia.clients import ModelClient, create_model_client
from fiscalia.config import (
    FlatSettings,
    bind_correlation_id,
    clear_correlation_id,
    get_settings,
)
from fiscalia.errors import (
    ActionExecutionError,
    FiscaliaError,
    ValidationError,
    normalise_error,
)
from fiscalia.normalise import normalize_nullable_string
from fiscalia.orchestration.actions import sanitize_actions
from fiscalia.orchestration.chat import (
    CHAT_ENDPOINT,
    ChatOrchestrator,
    ChatRequest,
    clean_history,
)
from fiscalia.orchestration.executor import ActionExecutor, ExecutionResult, TurnState
from fiscalia.orchestration.memory import ConversationMemoryService
from fiscalia.repository import CatalogRepository, ContextRepository, FinancialRepository
from fiscalia.resilience import CircuitBreaker, RateLimiter, RateLimitRule, RetryPolicy
from fiscalia.store import RecordStore, create_store

logger = structlog.get_logger(__name__)

USER_HEADER = "X-User-Id"
CORRELATION_HEADER = "X-Correlation-Id"
ACTIONS_ENDPOINT = "actions"
MEMORY_ENDPOINT = "memory"


@dataclass
class Services:
    """Long-lived collaborators shared by every request of one process."""

    settings: FlatSettings
    store: RecordStore
    client: ModelClient
    financial: FinancialRepository
    catalog: CatalogRepository
    context: ContextRepository
    executor: ActionExecutor
    rate_limiter: RateLimiter
    breaker: CircuitBreaker
    retry_policy: RetryPolicy
    orchestrator: ChatOrchestrator
    memory: ConversationMemoryService

    async def close(self) -> None:
        await self.client.close()
        await self.store.close()


def build_services(
    settings: FlatSettings | None = None,
    store: RecordStore | None = None,
    client: ModelClient | None = None,
) -> Services:
    """Wire the store, repositories, model client and resilience state."""
    settings = settings or get_settings()
    store = store or create_store(settings)
    client = client or create_model_client(settings)

    financial = FinancialRepository(store)
    catalog = CatalogRepository(store)
    context = ContextRepository(store, financial, catalog)
    executor = ActionExecutor(financial, catalog)

    window = settings.rate_limit_window_seconds
    rate_limiter = RateLimiter(
        {
            CHAT_ENDPOINT: RateLimitRule(settings.chat_rate_limit, window),
            ACTIONS_ENDPOINT: RateLimitRule(settings.actions_rate_limit, window),
            MEMORY_ENDPOINT: RateLimitRule(settings.memory_rate_limit, window),
        }
    )
    breaker = CircuitBreaker(
        "model_provider",
        failure_threshold=settings.circuit_failure_threshold,
        cooldown_seconds=settings.circuit_cooldown_seconds,
    )
    retry_policy = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
        multiplier=settings.retry_backoff_multiplier,
    )

    return Services(
        settings=settings,
        store=store,
        client=client,
        financial=financial,
        catalog=catalog,
        context=context,
        executor=executor,
        rate_limiter=rate_limiter,
        breaker=breaker,
        retry_policy=retry_policy,
        orchestrator=ChatOrchestrator(
            context,
            client,
            executor=executor,
            rate_limiter=rate_limiter,
            breaker=breaker,
            retry_policy=retry_policy,
            settings=settings,
        ),
        memory=ConversationMemoryService(
            context,
            client,
            breaker=breaker,
            retry_policy=retry_policy,
            timeout_seconds=settings.provider_timeout(),
        ),
    )


def _user_id(request: Request) -> str:
    user_id = normalize_nullable_string(request.headers.get(USER_HEADER))
    if not user_id:
        raise FiscaliaError("Authentification requise.", status_code=401, code="ERR_2001")
    return user_id


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Corps JSON invalide.") from e


def _error_response(request: Request, error: FiscaliaError) -> JSONResponse:
    body: dict[str, Any] = {
        "error": error.message,
        "correlationId": getattr(request.state, "correlation_id", None),
    }
    if error.code:
        body["detail"] = error.code
    headers = {}
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(body, status_code=error.status_code, headers=headers)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI application.

    ``services`` is built from settings at startup when not supplied.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        if owned:
            app.state.services = build_services()
        yield
        if owned:
            await app.state.services.close()

    app = FastAPI(title="Fiscalia", version="0.1.0", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def correlation(request: Request, call_next):
        correlation_id = normalize_nullable_string(
            request.headers.get(CORRELATION_HEADER)
        ) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(FiscaliaError)
    async def fiscalia_error_handler(request: Request, exc: FiscaliaError) -> JSONResponse:
        logger.warning(
            "request_failed",
            path=request.url.path,
            code=exc.code,
            status=exc.status_code,
            error=exc.message,
        )
        return _error_response(request, exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("request_crashed", path=request.url.path)
        return _error_response(request, normalise_error(exc))

    def _services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/chat")
    async def chat(request: Request) -> dict[str, Any]:
        user_id = _user_id(request)
        chat_request = ChatRequest.from_payload(await _json_body(request))
        response = await _services(request).orchestrator.handle_turn(
            user_id, chat_request, correlation_id=request.state.correlation_id
        )
        return response.to_dict()

    @app.post("/actions")
    async def actions(request: Request) -> JSONResponse:
        user_id = _user_id(request)
        services = _services(request)
        services.rate_limiter.check(user_id, ACTIONS_ENDPOINT)

        payload = await _json_body(request)
        try:
            parsed = sanitize_actions(payload.get("actions") if isinstance(payload, dict) else None)
        except ValidationError as e:
            rejected = ExecutionResult(
                success=False, mutated=False, error=e.message, state=TurnState.FAILED
            )
            return JSONResponse(rejected.to_dict(), status_code=e.status_code)

        try:
            result = await services.executor.execute(user_id, parsed)
        except ActionExecutionError as e:
            return JSONResponse(ExecutionResult.from_error(e).to_dict(), status_code=e.status_code)
        return JSONResponse(result.to_dict())

    @app.post("/memory")
    async def memory(request: Request) -> dict[str, Any]:
        user_id = _user_id(request)
        services = _services(request)
        services.rate_limiter.check(user_id, MEMORY_ENDPOINT)

        payload = await _json_body(request)
        if not isinstance(payload, dict):
            raise ValidationError("Corps JSON invalide.")
        refreshed = await services.memory.refresh(
            user_id,
            normalize_nullable_string(payload.get("conversationId")),
            clean_history(payload.get("history")),
            force=payload.get("force") is True,
        )
        return refreshed.to_dict()

    return app


def main() -> None:
    """Serve the API with uvicorn.

    Usage:
        fiscalia --host 0.0.0.0 --port 8000
    """
    import argparse

    import uvicorn

    from fiscalia.config import configure_logging

    configure_logging()

    parser = argparse.ArgumentParser(description="Fiscalia chat orchestration service")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    args = parser.parse_args()

    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
