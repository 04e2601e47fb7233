"""Unit tests for the capability registry and the per-invocation resolver."""

from __future__ import annotations

import pytest

from gcp_broker.gcp.proxies import ClientModuleProxy, CredentialView
from gcp_broker.sandbox.capabilities import (
    GOOGLE_CLOUD_MODULES,
    CapabilityEntry,
    CapabilityModule,
    CapabilityRegistry,
    default_registry,
)
from gcp_broker.sandbox.errors import NotFoundError
from gcp_broker.sandbox.isolation import (
    CapabilityNamespace,
    CapabilityResolver,
    ConsoleSink,
    Deadline,
    DeadlineExceeded,
    ExecutionContext,
)

try:
    from hypothesis import given, seed, settings
    from hypothesis import strategies as st

    HYPOTHESIS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - fallback path
    HYPOTHESIS_AVAILABLE = False


def _context(project_id: str = "proj-1") -> ExecutionContext:
    return ExecutionContext(
        invocation_id="inv-1",
        project_id=project_id,
        region="us-central1",
        deadline=Deadline(5.0),
        console=ConsoleSink(max_lines=10),
    )


def test_default_registry_exposes_fixed_capability_set() -> None:
    registry = default_registry()

    for module_name in GOOGLE_CLOUD_MODULES:
        assert module_name in registry
    for name in ("google.auth", "console", "asyncio", "time", "json"):
        assert name in registry
    assert "os" not in registry
    assert "subprocess" not in registry
    assert registry.names == tuple(sorted(registry.names))
    assert len(registry.describe()) == len(registry)


def test_resolve_unknown_name_raises_not_found() -> None:
    registry = default_registry()

    with pytest.raises(NotFoundError) as excinfo:
        registry.resolve("unregistered-module", _context())

    assert excinfo.value.message == "capability unregistered-module not available in sandbox"
    assert excinfo.value.retryable is False


def test_resolve_builds_fresh_instances_from_context() -> None:
    registry = default_registry()
    first = registry.resolve("google.cloud.compute_v1", _context("a"))
    second = registry.resolve("google.cloud.compute_v1", _context("b"))

    assert isinstance(first, ClientModuleProxy)
    assert first is not second
    assert first.module_name == "google.cloud.compute_v1"
    assert isinstance(registry.resolve("google.auth", _context()), CredentialView)


def test_registry_rejects_duplicates_and_bad_names() -> None:
    with pytest.raises(ValueError, match="duplicate capability"):
        CapabilityRegistry([CapabilityEntry("x", dict), CapabilityEntry("x", dict)])
    with pytest.raises(ValueError, match="invalid capability name"):
        CapabilityEntry("google..cloud", dict)
    with pytest.raises(TypeError, match="factory must be callable"):
        CapabilityEntry("x", "not-callable")  # type: ignore[arg-type]


def test_namespace_prefixes_are_not_capabilities() -> None:
    registry = default_registry()

    assert registry.is_namespace("google")
    assert registry.is_namespace("google.cloud")
    assert not registry.is_namespace("google.cloud.storage")
    with pytest.raises(NotFoundError):
        registry.resolve("google.cloud", _context())


def test_resolver_caches_instances_per_invocation() -> None:
    resolver = CapabilityResolver(default_registry(), _context())

    assert resolver.require("json") is resolver.require(" json ")
    with pytest.raises(NotFoundError):
        resolver.require("")


def test_import_hook_follows_python_import_forms() -> None:
    resolver = CapabilityResolver(default_registry(), _context())

    top = resolver.import_hook("google.cloud.compute_v1")
    assert isinstance(top, CapabilityNamespace)
    assert isinstance(top.cloud.compute_v1, ClientModuleProxy)

    from_form = resolver.import_hook("google.cloud", fromlist=("storage",))
    assert isinstance(from_form, CapabilityNamespace)
    assert isinstance(from_form.storage, ClientModuleProxy)

    with pytest.raises(NotFoundError):
        resolver.import_hook("os")
    with pytest.raises(NotFoundError):
        resolver.import_hook("google.cloud", fromlist=("*",))
    with pytest.raises(NotFoundError):
        resolver.import_hook("json", level=1)


def test_resolver_refuses_after_context_closed() -> None:
    context = _context()
    resolver = CapabilityResolver(default_registry(), context)
    context.close()

    with pytest.raises(DeadlineExceeded):
        resolver.require("json")


def test_capability_module_is_read_only() -> None:
    module = default_registry().resolve("json", _context())

    assert isinstance(module, CapabilityModule)
    assert module.loads(module.dumps({"a": 1})) == {"a": 1}
    with pytest.raises(AttributeError, match="read-only"):
        module.dumps = None
    with pytest.raises(AttributeError, match="not available in sandbox"):
        module.JSONDecoder  # noqa: B018


_NAME_ALPHABET = "abcdefghijklmnopqrstuvwxyz-"

if HYPOTHESIS_AVAILABLE:

    @settings(max_examples=30, derandomize=True, deadline=None)
    @seed(20260418)
    @given(st.text(alphabet=_NAME_ALPHABET, min_size=1, max_size=24))
    def test_property_unknown_names_are_not_found(name: str) -> None:
        registry = default_registry()
        if name in registry:
            return
        with pytest.raises(NotFoundError) as excinfo:
            registry.resolve(name, _context())
        assert excinfo.value.message == f"capability {name} not available in sandbox"

else:

    def test_seeded_unknown_names_are_not_found() -> None:
        registry = default_registry()
        for name in ("a", "unregistered-module", "google-cloud-compute"):
            with pytest.raises(NotFoundError) as excinfo:
                registry.resolve(name, _context())
            assert excinfo.value.message == f"capability {name} not available in sandbox"
