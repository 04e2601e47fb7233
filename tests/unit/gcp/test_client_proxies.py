"""
gcp-broker: unit tests for the async SDK proxies

Purpose
- Validate that fragments drive synchronous client libraries through awaitable
  proxies that inject credentials and project, drain pagers and hide
  filesystem-facing members.

What this test file should cover
- Lazy client construction with injected credentials/project.
- Method calls run off the event loop and return materialized data.
- Message/enum passthrough and blocked members.

Functional requirements
- Offline: the client module is a fake registered in ``sys.modules``.
"""

from __future__ import annotations

import enum
import sys
import threading
import types
from typing import Any

import pytest

from gcp_broker.gcp.credentials import CredentialHandle
from gcp_broker.gcp.proxies import ClientModuleProxy, materialize
from gcp_broker.sandbox.capabilities import CapabilityEntry, CapabilityRegistry
from gcp_broker.sandbox.engine import ExecutionState, SandboxEngine
from gcp_broker.selection import SelectionState

FAKE_MODULE = "fakecloud.compute_v1"


class _Status(enum.Enum):
    RUNNING = 1


class _Pager:
    def __init__(self, items: list[dict[str, str]]) -> None:
        self._items = items
        self.pages = [items]

    def __iter__(self) -> Any:
        return iter(self._items)


class _InstancesClient:
    instances: list[_InstancesClient] = []

    def __init__(self, *, credentials: object = None, project: str | None = None) -> None:
        self.credentials = credentials
        self.project = project
        self.threads: list[str] = []
        _InstancesClient.instances.append(self)

    def list(self, *, zone: str) -> _Pager:
        self.threads.append(threading.current_thread().name)
        return _Pager([{"name": f"vm-{zone}-1"}, {"name": f"vm-{zone}-2"}])

    def to_file(self, path: str) -> None:  # pragma: no cover - must never be reachable
        raise AssertionError(path)


@pytest.fixture
def fake_module(monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
    module = types.ModuleType(FAKE_MODULE)
    module.InstancesClient = _InstancesClient  # type: ignore[attr-defined]
    module.Status = _Status  # type: ignore[attr-defined]
    module.helper = lambda: "hidden"  # type: ignore[attr-defined]
    _InstancesClient.instances = []
    monkeypatch.setitem(sys.modules, FAKE_MODULE, module)
    return module


def _engine() -> SandboxEngine:
    registry = CapabilityRegistry(
        [CapabilityEntry(FAKE_MODULE, lambda scope: ClientModuleProxy(FAKE_MODULE, scope))]
    )
    selection = SelectionState()
    selection.select("proj-42")
    credentials = CredentialHandle(loader=lambda scopes, path: ("fake-credentials", "adc"))
    return SandboxEngine(registry, selection, credentials=credentials, timeout_seconds=2.0)


@pytest.mark.asyncio
async def test_client_calls_are_awaitable_and_materialized(fake_module: types.ModuleType) -> None:
    engine = _engine()
    source = "\n".join(
        [
            f"compute = require('{FAKE_MODULE}')",
            "client = compute.InstancesClient()",
            "items = await client.list(zone='us-central1-a')",
            "return [item['name'] for item in items]",
        ]
    )

    outcome = await engine.execute(source)

    assert outcome.state is ExecutionState.COMPLETED
    assert outcome.value == ["vm-us-central1-a-1", "vm-us-central1-a-2"]
    (client,) = _InstancesClient.instances
    assert client.credentials == "fake-credentials"
    assert client.project == "proj-42"
    assert client.threads and client.threads[0] != threading.main_thread().name


@pytest.mark.asyncio
async def test_enum_types_pass_through(fake_module: types.ModuleType) -> None:
    engine = _engine()

    outcome = await engine.execute(f"return require('{FAKE_MODULE}').Status.RUNNING")

    assert outcome.value == "RUNNING"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("source", "fragment"),
    [
        ("return require('{module}').helper()", "helper is not available in sandbox"),
        (
            "c = require('{module}').InstancesClient()\nawait c.to_file('/etc/passwd')\nreturn 1",
            "to_file is not available in sandbox",
        ),
        (
            "c = require('{module}').InstancesClient()\nc.setup_logging()\nreturn 1",
            "setup_logging is not available in sandbox",
        ),
        (
            "c = require('{module}').InstancesClient()\nreturn c.get_default_handler()",
            "get_default_handler is not available in sandbox",
        ),
    ],
)
async def test_non_client_filesystem_and_logging_members_are_hidden(
    fake_module: types.ModuleType, source: str, fragment: str
) -> None:
    engine = _engine()

    outcome = await engine.execute(source.format(module=FAKE_MODULE))

    assert outcome.state is ExecutionState.FAULTED
    assert outcome.error_kind == "FaultedExecutionError"
    assert fragment in (outcome.message or "")
    assert all(not item.threads for item in _InstancesClient.instances)


def test_materialize_drains_pagers_and_generators() -> None:
    pager = _Pager([{"name": "a"}])

    assert materialize(pager) == [{"name": "a"}]
    assert materialize(item for item in (1, 2)) == [1, 2]
    assert materialize("text") == "text"
    assert materialize({"k": 1}) == {"k": 1}


def test_module_proxy_reports_missing_library() -> None:
    from gcp_broker.gcp.proxies import CapabilityUnavailableError
    from gcp_broker.sandbox.isolation import Deadline, ExecutionContext

    context = ExecutionContext(
        invocation_id="i", project_id="p", region="r", deadline=Deadline(1.0)
    )
    proxy = ClientModuleProxy("fakecloud.not_installed_v9", context)

    with pytest.raises(CapabilityUnavailableError, match="client library is not installed"):
        proxy.Anything  # noqa: B018
