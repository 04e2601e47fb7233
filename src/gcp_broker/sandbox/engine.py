"""
gcp-broker: sandbox execution engine.

Purpose
- Run one untrusted fragment against Google Cloud capabilities and return a
  single ``ExecutionOutcome``; never raise across this boundary except for
  cancellation of the caller itself.

State machine
- VALIDATING -> COMPILED -> RUNNING -> COMPLETED | TIMED_OUT | FAULTED
- A missing target project fails before compilation; a compilation failure
  fails before any context or deadline exists.
- RUNNING owns a fresh ``ExecutionContext``; on deadline expiry the context is
  closed, the task is cancelled, given a short grace period, then abandoned.
  Anything it produces afterwards is discarded.
- The context is also closed before a finished task is classified; classes
  the fragment declared are never serialized, and their exceptions are
  described without calling their methods.
- The engine never retries; retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from gcp_broker.constants import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_CONSOLE_LINES,
    DEFAULT_TEARDOWN_GRACE_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
)
from gcp_broker.observability.logging import correlation_scope
from gcp_broker.sandbox.compiler import CompiledFragment, compile_fragment
from gcp_broker.sandbox.errors import (
    ExecutionTimeoutError,
    FaultedExecutionError,
    NonSerializableResultError,
    NotFoundError,
    PreconditionError,
    SandboxError,
)
from gcp_broker.sandbox.isolation import (
    ConsoleSink,
    Deadline,
    DeadlineExceeded,
    ExecutionContext,
    build_namespace,
    defined_by_fragment,
)
from gcp_broker.sandbox.serialization import JSONValue, to_json_value
from gcp_broker.utils.concurrency import BoundedSemaphore

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from gcp_broker.gcp.credentials import CredentialHandle
    from gcp_broker.sandbox.capabilities import CapabilityRegistry
    from gcp_broker.selection import SelectionState

NO_PROJECT_MESSAGE = (
    "No project selected. Please select a project first using the select-project tool."
)


class ExecutionState(str, Enum):
    VALIDATING = "validating"
    COMPILED = "compiled"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAULTED = "faulted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {ExecutionState.COMPLETED, ExecutionState.TIMED_OUT, ExecutionState.FAULTED}
)


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Terminal result of one invocation."""

    state: ExecutionState
    value: JSONValue = None
    error_kind: str | None = None
    message: str | None = None
    retryable: bool = False
    invocation_id: str = ""
    project_id: str | None = None
    region: str | None = None
    duration_ms: int = 0
    console_output: tuple[str, ...] = ()
    error: SandboxError | None = field(default=None, compare=False, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.state is ExecutionState.COMPLETED

    def unwrap(self) -> JSONValue:
        """Return the value or raise the typed failure (for retry supervision)."""

        if self.succeeded:
            return self.value
        if self.error is not None:
            raise self.error
        raise SandboxError(self.message or "execution failed", retryable=self.retryable)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "state": self.state.value,
            "invocationId": self.invocation_id,
            "projectId": self.project_id,
            "region": self.region,
            "durationMs": self.duration_ms,
        }
        if self.succeeded:
            payload["result"] = self.value
        else:
            payload["errorKind"] = self.error_kind
            payload["error"] = self.message
            payload["retryable"] = self.retryable
        if self.console_output:
            payload["console"] = list(self.console_output)
        return payload


class SandboxEngine:
    """Validate, compile and run fragments under a wall-clock deadline."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        selection: SelectionState,
        *,
        credentials: CredentialHandle | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_console_lines: int = DEFAULT_MAX_CONSOLE_LINES,
        teardown_grace_seconds: float = DEFAULT_TEARDOWN_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] | None = None,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if teardown_grace_seconds < 0:
            raise ValueError("teardown_grace_seconds must be >= 0")
        self._registry = registry
        self._selection = selection
        self._credentials = credentials
        self._timeout_seconds = float(timeout_seconds)
        self._permits = BoundedSemaphore(max_concurrent)
        self._max_console_lines = max_console_lines
        self._teardown_grace_seconds = float(teardown_grace_seconds)
        self._clock = clock
        self._id_factory = id_factory if id_factory is not None else _new_invocation_id
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._abandoned: set[asyncio.Task[Any]] = set()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def abandoned_tasks(self) -> int:
        return len(self._abandoned)

    async def execute(
        self,
        fragment: str,
        project_id: str | None = None,
        region: str | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> ExecutionOutcome:
        invocation_id = self._id_factory()
        started = self._clock()
        timeout = self._timeout_seconds if timeout_seconds is None else float(timeout_seconds)

        selection = self._selection.snapshot()
        target = _first_non_empty(project_id, selection.project_id)
        target_region = _first_non_empty(region, selection.region) or selection.region

        with correlation_scope(invocation_id=invocation_id, project_id=target):
            self._log(
                "info",
                "sandbox_invocation_started",
                invocation_id=invocation_id,
                project_id=target,
                region=target_region,
                timeout_seconds=timeout,
            )
            try:
                outcome = await self._execute(
                    fragment,
                    invocation_id=invocation_id,
                    project_id=target,
                    region=target_region,
                    timeout=timeout,
                    started=started,
                )
            except (Exception, DeadlineExceeded) as exc:  # noqa: BLE001 - engine boundary.
                outcome = self._failure(
                    FaultedExecutionError(exc, opaque=defined_by_fragment(exc)),
                    state=ExecutionState.FAULTED,
                    invocation_id=invocation_id,
                    project_id=target,
                    region=target_region,
                    started=started,
                )
            self._log_terminal(outcome)
            return outcome

    async def _execute(
        self,
        fragment: str,
        *,
        invocation_id: str,
        project_id: str | None,
        region: str,
        timeout: float,
        started: float,
    ) -> ExecutionOutcome:
        if project_id is None:
            return self._failure(
                PreconditionError(NO_PROJECT_MESSAGE),
                state=ExecutionState.FAULTED,
                invocation_id=invocation_id,
                project_id=None,
                region=region,
                started=started,
            )
        if timeout <= 0:
            return self._failure(
                PreconditionError("timeout_seconds must be > 0"),
                state=ExecutionState.FAULTED,
                invocation_id=invocation_id,
                project_id=project_id,
                region=region,
                started=started,
            )

        try:
            compiled = compile_fragment(fragment)
        except SandboxError as exc:
            return self._failure(
                exc,
                state=ExecutionState.FAULTED,
                invocation_id=invocation_id,
                project_id=project_id,
                region=region,
                started=started,
            )
        self._log(
            "debug",
            "sandbox_state_changed",
            invocation_id=invocation_id,
            state=ExecutionState.COMPILED.value,
            source_sha256=compiled.source_sha256,
        )

        async with self._permits.permit():
            context = ExecutionContext(
                invocation_id=invocation_id,
                project_id=project_id,
                region=region,
                deadline=Deadline(timeout, clock=self._clock),
                credentials=self._credentials,
                console=ConsoleSink(max_lines=self._max_console_lines),
            )
            self._log(
                "debug",
                "sandbox_state_changed",
                invocation_id=invocation_id,
                state=ExecutionState.RUNNING.value,
            )
            try:
                return await self._run(compiled, context, started=started)
            finally:
                context.close()

    async def _run(
        self,
        compiled: CompiledFragment,
        context: ExecutionContext,
        *,
        started: float,
    ) -> ExecutionOutcome:
        namespace = build_namespace(context, self._registry)
        exec(compiled.code, namespace)  # noqa: S102 - defines the wrapper coroutine only.
        entrypoint = namespace[compiled.entrypoint]
        task: asyncio.Task[Any] = asyncio.create_task(
            entrypoint(), name=f"fragment-{context.invocation_id}"
        )

        try:
            done, _ = await asyncio.wait({task}, timeout=context.deadline.remaining())
        except asyncio.CancelledError:
            context.close()
            task.cancel()
            self._abandon(task)
            raise

        if task not in done:
            context.close()
            task.cancel()
            await self._teardown(task)
            return self._timed_out(context, started=started)

        # Classification may touch fragment-declared objects; with the context
        # closed any fragment method they reach fails at its entry checkpoint.
        context.close()
        try:
            return self._classify(task, context, started=started)
        except (Exception, DeadlineExceeded):
            return self._unclassifiable(task, context, started=started)

    def _classify(
        self,
        task: asyncio.Task[Any],
        context: ExecutionContext,
        *,
        started: float,
    ) -> ExecutionOutcome:
        if task.cancelled():
            return self._timed_out(context, started=started)

        exc = task.exception()
        if exc is None:
            try:
                value = to_json_value(task.result())
            except SandboxError as error:
                return self._failure_in(context, error, started=started)
            return ExecutionOutcome(
                state=ExecutionState.COMPLETED,
                value=value,
                invocation_id=context.invocation_id,
                project_id=context.project_id,
                region=context.region,
                duration_ms=self._elapsed_ms(started),
                console_output=context.console.lines,
            )

        if isinstance(exc, DeadlineExceeded):
            return self._timed_out(context, started=started)
        if isinstance(exc, NotFoundError):
            return self._failure_in(context, exc, started=started)
        fault = FaultedExecutionError(exc, opaque=_is_opaque(exc))
        return self._failure_in(context, fault, started=started)

    def _unclassifiable(
        self,
        task: asyncio.Task[Any],
        context: ExecutionContext,
        *,
        started: float,
    ) -> ExecutionOutcome:
        exc = task.exception()
        error: SandboxError
        if exc is None:
            kind = type(task.result()).__name__
            error = NonSerializableResultError(f"result: value of type {kind} is not JSON data")
        else:
            error = FaultedExecutionError(exc, opaque=True)
        self._log(
            "warning",
            "sandbox_outcome_unclassifiable",
            invocation_id=context.invocation_id,
            error_kind=error.kind,
        )
        return self._failure_in(context, error, started=started)

    async def _teardown(self, task: asyncio.Task[Any]) -> None:
        if self._teardown_grace_seconds > 0:
            done, _ = await asyncio.wait({task}, timeout=self._teardown_grace_seconds)
            if task in done:
                _consume_result(task)
                return
        self._abandon(task)

    def _abandon(self, task: asyncio.Task[Any]) -> None:
        if task.done():
            _consume_result(task)
            return
        self._abandoned.add(task)

        def _forget(finished: asyncio.Task[Any]) -> None:
            self._abandoned.discard(finished)
            _consume_result(finished)

        task.add_done_callback(_forget)
        self._log("warning", "sandbox_task_abandoned", task=task.get_name())

    def _timed_out(self, context: ExecutionContext, *, started: float) -> ExecutionOutcome:
        return self._failure(
            ExecutionTimeoutError(context.deadline.timeout_seconds),
            state=ExecutionState.TIMED_OUT,
            invocation_id=context.invocation_id,
            project_id=context.project_id,
            region=context.region,
            started=started,
            console_output=context.console.lines,
        )

    def _failure_in(
        self, context: ExecutionContext, error: SandboxError, *, started: float
    ) -> ExecutionOutcome:
        return self._failure(
            error,
            state=ExecutionState.FAULTED,
            invocation_id=context.invocation_id,
            project_id=context.project_id,
            region=context.region,
            started=started,
            console_output=context.console.lines,
        )

    def _failure(
        self,
        error: SandboxError,
        *,
        state: ExecutionState,
        invocation_id: str,
        project_id: str | None,
        region: str | None,
        started: float,
        console_output: tuple[str, ...] = (),
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            state=state,
            error_kind=error.kind,
            message=error.message,
            retryable=error.retryable,
            invocation_id=invocation_id,
            project_id=project_id,
            region=region,
            duration_ms=self._elapsed_ms(started),
            console_output=console_output,
            error=error,
        )

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int(round((self._clock() - started) * 1000)))

    def _log_terminal(self, outcome: ExecutionOutcome) -> None:
        if outcome.succeeded:
            self._log(
                "info",
                "sandbox_invocation_finished",
                invocation_id=outcome.invocation_id,
                state=outcome.state.value,
                duration_ms=outcome.duration_ms,
            )
            return
        self._log(
            "warning",
            "sandbox_invocation_failed",
            invocation_id=outcome.invocation_id,
            state=outcome.state.value,
            error_kind=outcome.error_kind,
            error=outcome.message,
            retryable=outcome.retryable,
            duration_ms=outcome.duration_ms,
        )

    def _log(self, level: str, event: str, **fields: object) -> None:
        # Logging must never fail an invocation.
        with suppress(Exception):
            getattr(self._logger, level)(event, **fields)


def _first_non_empty(*candidates: str | None) -> str | None:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _is_opaque(error: BaseException) -> bool:
    if defined_by_fragment(error):
        return True
    return any(defined_by_fragment(arg) for arg in error.args)


def _consume_result(task: asyncio.Task[Any]) -> None:
    # Retrieve the outcome so asyncio does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


def _new_invocation_id() -> str:
    return uuid.uuid4().hex


__all__ = [
    "NO_PROJECT_MESSAGE",
    "ExecutionOutcome",
    "ExecutionState",
    "SandboxEngine",
]
