"""Typed failures reported by the sandbox execution engine."""

from __future__ import annotations

from gcp_broker.utils.retry import is_transient_error


class SandboxError(RuntimeError):
    """Base sandbox failure with a stable ``kind`` and retry classification."""

    kind: str = "SandboxError"
    default_retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        normalized = message.strip() if isinstance(message, str) else str(message)
        self.message = normalized or self.kind
        self.retryable = self.default_retryable if retryable is None else bool(retryable)
        super().__init__(self.message)


class PreconditionError(SandboxError):
    """No target project could be resolved from arguments or selection."""

    kind = "PreconditionError"


class MalformedSourceError(SandboxError):
    """The fragment does not parse."""

    kind = "MalformedSourceError"


class MissingResultError(SandboxError):
    """The fragment has no top-level ``return`` statement."""

    kind = "MissingResultError"

    def __init__(self, message: str = "Code must include a return statement") -> None:
        super().__init__(message)


class LoweringError(SandboxError):
    """The fragment parsed but could not be lowered to an executable form."""

    kind = "LoweringError"


class NotFoundError(SandboxError):
    """A fragment asked for a capability that is not registered."""

    kind = "NotFoundError"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"capability {name} not available in sandbox")


class NonSerializableResultError(SandboxError):
    """The produced value cannot be marshaled to JSON data."""

    kind = "NonSerializableResultError"


class ExecutionTimeoutError(SandboxError):
    """The wall-clock deadline elapsed before the fragment produced a value."""

    kind = "ExecutionTimeoutError"
    default_retryable = True

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"execution timed out after {timeout_seconds:g} seconds")


class FaultedExecutionError(SandboxError):
    """An unhandled error escaped the fragment.

    Retryability follows the inner error: transient API failures (rate limits,
    unavailable backends, connection resets) may be retried, everything else is
    final.

    With ``opaque=True`` the inner error is described from its class name and
    its plain string arguments only, so none of its own methods run, and it is
    never retryable.
    """

    kind = "FaultedExecutionError"

    def __init__(self, inner: BaseException, *, opaque: bool = False) -> None:
        self.inner = inner
        name = type(inner).__name__
        if opaque:
            inner_message = _plain_text(inner) or name
            retryable = False
        else:
            inner_message = str(inner).strip() or name
            retryable = is_transient_error(inner)
        super().__init__(f"{name}: {inner_message}", retryable=retryable)


_RAW_ARGS = BaseException.__dict__["args"]


def _plain_text(error: BaseException) -> str:
    args = _RAW_ARGS.__get__(error)
    return "; ".join(arg.strip() for arg in args if type(arg) is str and arg.strip())


__all__ = [
    "ExecutionTimeoutError",
    "FaultedExecutionError",
    "LoweringError",
    "MalformedSourceError",
    "MissingResultError",
    "NonSerializableResultError",
    "NotFoundError",
    "PreconditionError",
    "SandboxError",
]
