"""
gcp-broker: unit tests for the isolated execution context

Purpose
- Validate deadline bookkeeping, bounded console capture and the restricted
  namespace handed to fragments.

What this test file should cover
- Sticky deadline expiry driven by an injected clock.
- Console line cap and level prefixes.
- Builtins allow-list: no file, process or introspection primitives.
- Long ranges and sentinel iteration stop at the deadline even when a C
  builtin consumes them.

Non-functional requirements
- Deterministic; no real time passes.
"""

from __future__ import annotations

import pytest

from gcp_broker.sandbox.capabilities import default_registry
from gcp_broker.sandbox.compiler import ASYNC_CHECKPOINT_NAME, CHECKPOINT_NAME, GUARD_ITER_NAME
from gcp_broker.sandbox.isolation import (
    ALLOWED_BUILTIN_NAMES,
    GUARDED_RANGE_THRESHOLD,
    ConsoleSink,
    Deadline,
    DeadlineExceeded,
    ExecutionContext,
    GuardedRange,
    build_namespace,
    defined_by_fragment,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_deadline_expires_and_stays_expired() -> None:
    clock = _FakeClock()
    deadline = Deadline(2.0, clock=clock)

    deadline.check()
    assert deadline.remaining() == pytest.approx(2.0)

    clock.now += 2.5
    with pytest.raises(DeadlineExceeded):
        deadline.check()

    clock.now -= 10.0
    assert deadline.expired
    assert deadline.remaining() == 0.0
    with pytest.raises(DeadlineExceeded):
        deadline.check()


def test_deadline_guard_iter_stops_after_expiry() -> None:
    clock = _FakeClock()
    deadline = Deadline(1.0, clock=clock)
    seen: list[int] = []

    with pytest.raises(DeadlineExceeded):
        for item in deadline.guard_iter(range(10)):
            seen.append(item)
            if item == 2:
                deadline.expire()

    assert seen == [0, 1, 2]


def test_deadline_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        Deadline(0)


def test_console_sink_caps_lines_and_prefixes_levels() -> None:
    console = ConsoleSink(max_lines=3)

    console.print("a", "b", sep="-")
    console.warn("careful")
    console.info("fyi", 2)
    console.error("dropped")

    assert console.lines == ("a-b", "[warn] careful", "[info] fyi 2")
    assert console.dropped == 1


def test_execution_context_requires_identifiers() -> None:
    with pytest.raises(ValueError, match="project_id must not be empty"):
        ExecutionContext(invocation_id="i", project_id=" ", region="r", deadline=Deadline(1.0))


def test_namespace_binds_only_allowed_names() -> None:
    context = ExecutionContext(
        invocation_id="inv", project_id="proj", region="eu-west1", deadline=Deadline(1.0)
    )

    namespace = build_namespace(context, default_registry())
    builtins_map = namespace["__builtins__"]

    assert isinstance(builtins_map, dict)
    assert namespace["project_id"] == "proj"
    assert namespace["region"] == "eu-west1"
    assert callable(namespace["require"])
    for hook in (CHECKPOINT_NAME, ASYNC_CHECKPOINT_NAME, GUARD_ITER_NAME):
        assert callable(namespace[hook])
    for forbidden in ("open", "eval", "exec", "compile", "globals", "getattr", "type", "input"):
        assert forbidden not in builtins_map
    assert builtins_map["print"] == context.console.print
    assert set(builtins_map) - {"print", "__import__", "__build_class__"} <= ALLOWED_BUILTIN_NAMES


def test_long_ranges_and_sentinel_iteration_honour_the_deadline() -> None:
    deadline = Deadline(1.0, clock=_FakeClock())
    context = ExecutionContext(
        invocation_id="inv", project_id="proj", region="eu-west1", deadline=deadline
    )
    builtins_map = build_namespace(context, default_registry())["__builtins__"]
    safe_range = builtins_map["range"]
    safe_iter = builtins_map["iter"]

    assert isinstance(safe_range(GUARDED_RANGE_THRESHOLD), range)
    assert list(safe_iter([1, 2])) == [1, 2]
    long_span = safe_range(10**18)
    assert isinstance(long_span, GuardedRange)
    assert (long_span.start, long_span.stop, long_span.step) == (0, 10**18, 1)
    assert len(long_span) == 10**18
    assert 10**17 in long_span
    assert long_span[-1] == 10**18 - 1
    assert long_span[:3] == range(3)

    deadline.expire()
    with pytest.raises(DeadlineExceeded):
        sum(long_span)
    with pytest.raises(DeadlineExceeded):
        any(safe_iter(int, 1))
    with pytest.raises(DeadlineExceeded):
        list(reversed(long_span))


def test_defined_by_fragment_follows_the_class_hierarchy() -> None:
    declared = type("Declared", (dict,), {"__module__": "fragment"})
    derived = type("Derived", (declared,), {"__module__": __name__})

    assert defined_by_fragment(declared())
    assert defined_by_fragment(derived())
    assert not defined_by_fragment({})
    assert not defined_by_fragment(ValueError("x"))
