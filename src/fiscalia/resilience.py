"""Resilience primitives used around every outbound call.

- ``retry``: bounded retry with exponential backoff and +/-25% jitter.
- ``with_timeout``: bounds one awaited operation.
- ``RateLimiter``: fixed-window request cap per (user, endpoint).
- ``CircuitBreaker``: fails fast after repeated consecutive failures.
- ``resilient_call``: timeout and retry behind a circuit breaker.

Rate limiter and circuit breaker state is process-local.
"""

import asyncio
import math
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

import structlog

from fiscalia.errors import (
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitExceededError,
    is_retryable,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


# === Retry ===


@dataclass
class RetryPolicy:
    """Backoff parameters for ``retry``."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
        base = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        jitter = base * JITTER_RATIO * (random.random() * 2 - 1)
        return max(0.0, base + jitter)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds, a non-retryable error occurs,
    or ``policy.max_attempts`` attempts have been made.

    The last error is re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts or not should_retry(e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retrying_operation",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    message: str | None = None,
) -> T:
    """Await ``awaitable`` or raise ProviderTimeoutError after ``timeout_seconds``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise ProviderTimeoutError(
            message or f"Opération dépassée (timeout: {int(timeout_seconds * 1000)}ms)",
            details={"timeout_seconds": timeout_seconds},
        ) from e


# === Rate limiting ===


@dataclass
class RateLimitRule:
    max_requests: int
    window_seconds: float


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window rate limiter keyed by (user, endpoint)."""

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        default_rule: RateLimitRule | None = None,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rules = rules
        self._default_rule = default_rule or RateLimitRule(max_requests=200, window_seconds=60.0)
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._last_sweep = clock()

    @staticmethod
    def _key(user_id: str, endpoint: str) -> str:
        return f"{user_id}:{endpoint}"

    def _rule(self, endpoint: str) -> RateLimitRule:
        return self._rules.get(endpoint, self._default_rule)

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        if expired:
            logger.debug("rate_limit_swept", removed=len(expired))

    def check(self, user_id: str, endpoint: str) -> int:
        """Count one request; raise RateLimitExceededError when over the cap.

        Returns the number of requests remaining in the current window.
        """
        now = self._clock()
        self._sweep(now)
        rule = self._rule(endpoint)
        key = self._key(user_id, endpoint)

        window = self._windows.get(key)
        if window is None or window.reset_at <= now:
            self._windows[key] = _Window(count=1, reset_at=now + rule.window_seconds)
            return rule.max_requests - 1

        if window.count >= rule.max_requests:
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.warning(
                "rate_limit_exceeded",
                user_id=user_id,
                endpoint=endpoint,
                retry_after=retry_after,
            )
            raise RateLimitExceededError(
                retry_after,
                details={"limit": rule.max_requests, "window_seconds": rule.window_seconds},
            )

        window.count += 1
        return rule.max_requests - window.count

    def info(self, user_id: str, endpoint: str) -> dict[str, Any]:
        """Current usage for a key without counting a request."""
        now = self._clock()
        rule = self._rule(endpoint)
        window = self._windows.get(self._key(user_id, endpoint))
        if window is None or window.reset_at <= now:
            return {"count": 0, "remaining": rule.max_requests, "reset_in": 0}
        return {
            "count": window.count,
            "remaining": max(0, rule.max_requests - window.count),
            "reset_in": max(0, math.ceil(window.reset_at - now)),
        }

    def reset(self, user_id: str, endpoint: str | None = None) -> None:
        """Forget one key, or every key of a user when ``endpoint`` is None."""
        if endpoint is not None:
            self._windows.pop(self._key(user_id, endpoint), None)
            return
        prefix = f"{user_id}:"
        for key in [k for k in self._windows if k.startswith(prefix)]:
            del self._windows[key]


# === Circuit breaker ===


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures.

    While open, calls are rejected with CircuitOpenError until
    ``cooldown_seconds`` have elapsed; the next call is then let through as a
    probe. A successful probe closes the circuit, a failed one re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._logger = logger.bind(circuit=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def _before_call(self) -> None:
        if self._state == CircuitState.CLOSED:
            return
        now = self._clock()
        if self._state == CircuitState.OPEN:
            remaining = self._opened_at + self._cooldown_seconds - now
            if remaining > 0:
                raise CircuitOpenError(retry_after=max(1, math.ceil(remaining)))
            self._state = CircuitState.HALF_OPEN
            self._logger.info("circuit_half_open")
        if self._probe_in_flight:
            raise CircuitOpenError(retry_after=1)
        self._probe_in_flight = True

    def _on_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            self._logger.info("circuit_closed")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_in_flight = False

    def _on_failure(self) -> None:
        self._failures += 1
        self._probe_in_flight = False
        if self._state == CircuitState.HALF_OPEN or self._failures >= self._failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._logger.warning("circuit_opened", failures=self._failures)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker."""
        self._before_call()
        try:
            result = await operation()
        except BaseException:
            # Cancellation counts as a failure and frees the half-open slot.
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_in_flight = False


# === Composition ===


async def resilient_call(
    operation: Callable[[], Awaitable[T]],
    breaker: CircuitBreaker | None = None,
    policy: RetryPolicy | None = None,
    timeout_seconds: float | None = None,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Circuit breaker around retry around a per-attempt timeout.

    The breaker records one outcome per call, after retries are exhausted.
    """

    async def attempt() -> T:
        if timeout_seconds is None:
            return await operation()
        return await with_timeout(operation(), timeout_seconds)

    async def retried() -> T:
        return await retry(attempt, policy=policy, sleep=sleep, operation_name=operation_name)

    if breaker is None:
        return await retried()
    return await breaker.call(retried)
