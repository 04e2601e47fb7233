"""
gcp-broker: retry supervisor.

Purpose
- Re-attempt an asynchronous unit of work a bounded number of times when it
  fails with a transient (retryable) error.

Contract
- ``await RetrySupervisor.run(unit) -> result``; after the last attempt the
  last error is re-raised unchanged.
- Errors that declare ``retryable`` are trusted; anything else is classified by
  ``is_transient_error`` (HTTP status, connection failures, message fragments).
- Cancellation is never retried.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from functools import wraps
from typing import TYPE_CHECKING, Final, ParamSpec, TypeVar

import structlog

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

T = TypeVar("T")
P = ParamSpec("P")

SleepFn = Callable[[float], Awaitable[None]]
ErrorClassifier = Callable[[BaseException], bool]

TRANSIENT_HTTP_STATUSES: Final[frozenset[int]] = frozenset({408, 429, 500, 502, 503, 504})
TRANSIENT_NETWORK_CODES: Final[frozenset[str]] = frozenset(
    {"ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT"}
)
TRANSIENT_GRPC_CODES: Final[frozenset[str]] = frozenset(
    {"UNAVAILABLE", "DEADLINE_EXCEEDED", "RESOURCE_EXHAUSTED", "ABORTED", "INTERNAL"}
)
TRANSIENT_MESSAGE_FRAGMENTS: Final[tuple[str, ...]] = (
    "timeout",
    "timed out",
    "rate limit",
    "quota exceeded",
    "service unavailable",
    "internal error",
    "connection reset",
)


class BackoffStrategy(str, Enum):
    """Delay growth between attempts."""

    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def is_transient_error(error: BaseException) -> bool:
    """Return ``True`` when ``error`` looks like a temporary API or network fault."""

    if isinstance(error, asyncio.CancelledError):
        return False

    declared = getattr(error, "retryable", None)
    if isinstance(declared, bool):
        return declared

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    code = getattr(error, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        if code in TRANSIENT_HTTP_STATUSES:
            return True
    elif isinstance(code, str) and code.upper() in TRANSIENT_NETWORK_CODES:
        return True

    # grpc status codes surface as enum members on google.api_core errors.
    grpc_status = getattr(error, "grpc_status_code", None)
    grpc_name = getattr(grpc_status, "name", None)
    if isinstance(grpc_name, str) and grpc_name in TRANSIENT_GRPC_CODES:
        return True

    status = getattr(error, "status", None)
    if isinstance(status, int) and status in TRANSIENT_HTTP_STATUSES:
        return True

    message = str(error).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGE_FRAGMENTS)


def compute_delay(
    strategy: BackoffStrategy | str,
    base_delay_seconds: float,
    attempt: int,
) -> float:
    """Delay to wait after failed ``attempt`` (1-based)."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    resolved = BackoffStrategy(strategy)
    if resolved is BackoffStrategy.CONSTANT:
        return base_delay_seconds
    if resolved is BackoffStrategy.LINEAR:
        return base_delay_seconds * attempt
    return base_delay_seconds * float(2 ** (attempt - 1))


class RetrySupervisor:
    """Bounded retry loop around an async unit of work."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        delay_seconds: float = 1.0,
        backoff: BackoffStrategy | str = BackoffStrategy.LINEAR,
        classifier: ErrorClassifier = is_transient_error,
        sleep: SleepFn = asyncio.sleep,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self._max_attempts = max_attempts
        self._delay_seconds = float(delay_seconds)
        self._backoff = BackoffStrategy(backoff)
        self._classifier = classifier
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def run(
        self,
        unit: Callable[[], Awaitable[T]],
        *,
        max_attempts: int | None = None,
        delay_seconds: float | None = None,
        operation: str = "operation",
    ) -> T:
        attempts = self._max_attempts if max_attempts is None else max_attempts
        if attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        delay = self._delay_seconds if delay_seconds is None else float(delay_seconds)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await unit()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retryable = self._classifier(exc)
                if not retryable or attempt >= attempts:
                    self._logger.warning(
                        "retry_gave_up",
                        operation=operation,
                        attempt=attempt,
                        max_attempts=attempts,
                        retryable=retryable,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise
                wait_seconds = compute_delay(self._backoff, delay, attempt)
                self._logger.info(
                    "retry_scheduled",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    wait_seconds=wait_seconds,
                    error_type=type(exc).__name__,
                )
                if wait_seconds > 0:
                    await self._sleep(wait_seconds)


async def with_retry(
    unit: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay_seconds: float = 1.0,
    *,
    classifier: ErrorClassifier = is_transient_error,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """One-shot convenience wrapper around :class:`RetrySupervisor`."""

    supervisor = RetrySupervisor(
        max_attempts=max_attempts,
        delay_seconds=delay_seconds,
        classifier=classifier,
        sleep=sleep,
    )
    return await supervisor.run(unit)


def make_retryable(
    supervisor: RetrySupervisor,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate an async function so every call runs under ``supervisor``."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await supervisor.run(
                lambda: func(*args, **kwargs),
                operation=getattr(func, "__qualname__", "operation"),
            )

        return wrapper

    return decorator


__all__ = [
    "BackoffStrategy",
    "ErrorClassifier",
    "RetrySupervisor",
    "SleepFn",
    "TRANSIENT_HTTP_STATUSES",
    "compute_delay",
    "is_transient_error",
    "make_retryable",
    "with_retry",
]
