"""
gcp-broker: isolated execution context.

Purpose
- Build the per-invocation namespace a fragment runs in: restricted builtins,
  ``project_id``/``region`` bindings, ``require`` and the deadline hooks the
  compiler injects. Nothing else from the host process is reachable.

Notes
- ``DeadlineExceeded`` derives from ``BaseException`` so ``except Exception``
  inside a fragment cannot swallow it; bare ``except:`` and ``finally`` blocks
  are re-checked by injected checkpoints, and the deadline is sticky once
  expired.
- Capability lookups (``require``, ``import``) go through one resolver that
  caches instances for the lifetime of the invocation.
"""

from __future__ import annotations

import asyncio
import builtins
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

import structlog

from gcp_broker.sandbox.compiler import ASYNC_CHECKPOINT_NAME, CHECKPOINT_NAME, GUARD_ITER_NAME
from gcp_broker.sandbox.errors import NotFoundError

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from gcp_broker.gcp.credentials import CredentialHandle
    from gcp_broker.sandbox.capabilities import CapabilityRegistry

Clock = Callable[[], float]

FRAGMENT_MODULE_NAME: Final[str] = "fragment"
YIELD_INTERVAL_SECONDS: Final[float] = 0.01
# Ranges longer than this iterate through the deadline guard.
GUARDED_RANGE_THRESHOLD: Final[int] = 1_000_000

ALLOWED_BUILTIN_NAMES: Final[frozenset[str]] = frozenset(
    {
        # Types
        "bool",
        "bytearray",
        "bytes",
        "complex",
        "dict",
        "float",
        "frozenset",
        "int",
        "list",
        "set",
        "slice",
        "str",
        "tuple",
        # Functions
        "abs",
        "all",
        "any",
        "ascii",
        "bin",
        "callable",
        "chr",
        "divmod",
        "enumerate",
        "filter",
        "format",
        "hash",
        "hex",
        "isinstance",
        "issubclass",
        "iter",
        "len",
        "map",
        "max",
        "min",
        "next",
        "oct",
        "ord",
        "pow",
        "range",
        "repr",
        "reversed",
        "round",
        "sorted",
        "sum",
        "zip",
        # Class helpers
        "classmethod",
        "property",
        "staticmethod",
        # Constants
        "Ellipsis",
        "NotImplemented",
        # Exceptions
        "ArithmeticError",
        "AssertionError",
        "AttributeError",
        "ConnectionError",
        "Exception",
        "ExceptionGroup",
        "IndexError",
        "KeyError",
        "LookupError",
        "NotImplementedError",
        "OverflowError",
        "PermissionError",
        "RuntimeError",
        "StopAsyncIteration",
        "StopIteration",
        "TimeoutError",
        "TypeError",
        "ValueError",
        "ZeroDivisionError",
    }
)


class DeadlineExceeded(BaseException):
    """Raised inside fragment code once the invocation deadline has passed."""


def defined_by_fragment(value: object) -> bool:
    """True when the class of ``value``, or any of its bases, was declared by a fragment."""

    return any(cls.__module__ == FRAGMENT_MODULE_NAME for cls in type(value).__mro__)


class Deadline:
    """Absolute wall-clock deadline with sticky expiry."""

    __slots__ = ("_clock", "_expires_at", "_expired", "_last_yield", "timeout_seconds")

    def __init__(self, timeout_seconds: float, *, clock: Clock = time.monotonic) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._clock = clock
        self.timeout_seconds = float(timeout_seconds)
        now = clock()
        self._expires_at = now + self.timeout_seconds
        self._expired = False
        self._last_yield = now

    @property
    def expires_at(self) -> float:
        return self._expires_at

    @property
    def expired(self) -> bool:
        return self._expired or self._clock() >= self._expires_at

    def remaining(self) -> float:
        if self._expired:
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    def expire(self) -> None:
        self._expired = True

    def check(self) -> None:
        if self._expired or self._clock() >= self._expires_at:
            self._expired = True
            raise DeadlineExceeded(f"deadline of {self.timeout_seconds:g}s exceeded")

    async def check_and_yield(self) -> None:
        """Check the deadline and periodically hand control back to the event loop."""

        self.check()
        now = self._clock()
        if now - self._last_yield >= YIELD_INTERVAL_SECONDS:
            self._last_yield = now
            await asyncio.sleep(0)
            self.check()

    def guard_iter(self, iterable: Iterable[Any]) -> Iterator[Any]:
        for item in iterable:
            self.check()
            yield item


class ConsoleSink:
    """Collect fragment console output with a bounded line buffer."""

    def __init__(
        self,
        *,
        max_lines: int = 200,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        if max_lines <= 0:
            raise ValueError("max_lines must be > 0")
        self._max_lines = max_lines
        self._lines: list[str] = []
        self._dropped = 0
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def lines(self) -> tuple[str, ...]:
        return tuple(self._lines)

    @property
    def dropped(self) -> int:
        return self._dropped

    def log(self, *values: object) -> None:
        self._write("log", values)

    def info(self, *values: object) -> None:
        self._write("info", values)

    def debug(self, *values: object) -> None:
        self._write("debug", values)

    def warn(self, *values: object) -> None:
        self._write("warn", values)

    def error(self, *values: object) -> None:
        self._write("error", values)

    warning = warn

    def print(self, *values: object, sep: str | None = " ", **_ignored: object) -> None:
        separator = " " if sep is None else str(sep)
        self._append("log", separator.join(str(value) for value in values))

    def _write(self, level: str, values: tuple[object, ...]) -> None:
        self._append(level, " ".join(str(value) for value in values))

    def _append(self, level: str, text: str) -> None:
        if len(self._lines) >= self._max_lines:
            self._dropped += 1
            return
        line = text if level == "log" else f"[{level}] {text}"
        self._lines.append(line)
        self._logger.debug("fragment_console", stream=level, text=text)


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Everything one invocation may see; never shared between invocations."""

    invocation_id: str
    project_id: str
    region: str
    deadline: Deadline
    credentials: CredentialHandle | None = None
    console: ConsoleSink = field(default_factory=ConsoleSink)

    def __post_init__(self) -> None:
        if not self.project_id.strip():
            raise ValueError("project_id must not be empty")
        if not self.region.strip():
            raise ValueError("region must not be empty")

    @property
    def closed(self) -> bool:
        return self.deadline.expired

    def checkpoint(self) -> None:
        self.deadline.check()

    def close(self) -> None:
        """Tear the context down; later capability calls and checkpoints fail."""

        self.deadline.expire()


class CapabilityNamespace:
    """Dotted prefix of registered capabilities, e.g. ``google.cloud``."""

    __slots__ = ("_prefix", "_resolver")

    def __init__(self, prefix: str, resolver: CapabilityResolver) -> None:
        object.__setattr__(self, "_prefix", prefix)
        object.__setattr__(self, "_resolver", resolver)

    def __getattr__(self, attr: str) -> object:
        if attr.startswith("_"):
            raise AttributeError(attr)
        return self._resolver.lookup(f"{self._prefix}.{attr}")

    def __setattr__(self, attr: str, value: object) -> None:
        raise AttributeError(f"{self._prefix} is read-only")

    def __repr__(self) -> str:
        return f"<capability namespace {self._prefix}>"


class CapabilityResolver:
    """Per-invocation front end to the capability registry."""

    def __init__(self, registry: CapabilityRegistry, context: ExecutionContext) -> None:
        self._registry = registry
        self._context = context
        self._instances: dict[str, object] = {}

    def require(self, name: object) -> object:
        if not isinstance(name, str) or not name.strip():
            raise NotFoundError(repr(name))
        self._context.checkpoint()
        normalized = name.strip()
        cached = self._instances.get(normalized)
        if cached is not None:
            return cached
        instance = self._registry.resolve(normalized, self._context)
        self._instances[normalized] = instance
        return instance

    def lookup(self, name: str) -> object:
        """Resolve ``name`` to a capability or, for a dotted prefix, a namespace."""

        if name in self._registry:
            return self.require(name)
        if self._registry.is_namespace(name):
            return CapabilityNamespace(name, self)
        raise NotFoundError(name)

    def import_hook(
        self,
        name: str,
        globals: object = None,
        locals: object = None,
        fromlist: Iterable[str] | None = (),
        level: int = 0,
    ) -> object:
        del globals, locals
        if level:
            raise NotFoundError("." * level + name)
        if fromlist:
            for item in fromlist:
                if item == "*" or item.startswith("_"):
                    raise NotFoundError(f"{name}.{item}")
            return self.lookup(name)
        if name not in self._registry and not self._registry.is_namespace(name):
            raise NotFoundError(name)
        return self.lookup(name.split(".", 1)[0])


class GuardedRange:
    """``range`` stand-in for long spans whose iteration honours the deadline."""

    __slots__ = ("_deadline", "_span")

    def __init__(self, span: range, deadline: Deadline) -> None:
        self._span = span
        self._deadline = deadline

    @property
    def start(self) -> int:
        return self._span.start

    @property
    def stop(self) -> int:
        return self._span.stop

    @property
    def step(self) -> int:
        return self._span.step

    def __iter__(self) -> Iterator[int]:
        return self._deadline.guard_iter(self._span)

    def __reversed__(self) -> Iterator[int]:
        return self._deadline.guard_iter(reversed(self._span))

    def __len__(self) -> int:
        return len(self._span)

    def __contains__(self, item: object) -> bool:
        return item in self._span

    def __getitem__(self, index: Any) -> Any:
        result = self._span[index]
        if isinstance(result, range):
            return _bounded_range(result, self._deadline)
        return result

    def __repr__(self) -> str:
        return repr(self._span)


def _bounded_range(span: range, deadline: Deadline) -> range | GuardedRange:
    # len() overflows for spans beyond sys.maxsize.
    longest = abs(span.stop - span.start) // abs(span.step)
    if longest <= GUARDED_RANGE_THRESHOLD:
        return span
    return GuardedRange(span, deadline)


def create_safe_builtins(
    *,
    console: ConsoleSink,
    import_hook: Callable[..., object],
    deadline: Deadline,
) -> dict[str, object]:
    safe: dict[str, object] = {}
    for name in ALLOWED_BUILTIN_NAMES:
        if hasattr(builtins, name):
            safe[name] = getattr(builtins, name)

    # C-level consumers (sum, any, list, ...) run without checkpoints, so the
    # sources that can feed them unbounded input are guarded instead.
    def guarded_iter(source: Any, *sentinel: Any) -> Iterator[Any]:
        if sentinel:
            return deadline.guard_iter(builtins.iter(source, *sentinel))
        return builtins.iter(source)

    def guarded_range(*args: Any) -> range | GuardedRange:
        return _bounded_range(builtins.range(*args), deadline)

    safe["iter"] = guarded_iter
    safe["range"] = guarded_range
    safe["print"] = console.print
    safe["__import__"] = import_hook
    # Needed by class statements; ``type``/``object``/``super`` stay unavailable.
    safe["__build_class__"] = builtins.__build_class__
    return safe


def build_namespace(
    context: ExecutionContext,
    registry: CapabilityRegistry,
) -> dict[str, object]:
    """Fresh globals for one fragment run."""

    resolver = CapabilityResolver(registry, context)
    deadline = context.deadline
    return {
        "__builtins__": create_safe_builtins(
            console=context.console,
            import_hook=resolver.import_hook,
            deadline=deadline,
        ),
        "__name__": FRAGMENT_MODULE_NAME,
        "project_id": context.project_id,
        "region": context.region,
        "require": resolver.require,
        CHECKPOINT_NAME: deadline.check,
        ASYNC_CHECKPOINT_NAME: deadline.check_and_yield,
        GUARD_ITER_NAME: deadline.guard_iter,
    }


__all__ = [
    "ALLOWED_BUILTIN_NAMES",
    "GUARDED_RANGE_THRESHOLD",
    "CapabilityNamespace",
    "CapabilityResolver",
    "ConsoleSink",
    "Deadline",
    "DeadlineExceeded",
    "ExecutionContext",
    "GuardedRange",
    "build_namespace",
    "create_safe_builtins",
    "defined_by_fragment",
]
