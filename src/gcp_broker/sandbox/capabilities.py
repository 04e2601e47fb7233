"""
gcp-broker: capability registry.

Purpose
- Closed, read-only mapping from capability name to factory. Fragments reach
  capabilities only through ``require(name)`` or ``import name``.

Contract
- ``resolve(name, scope)`` returns a fresh instance or raises
  ``NotFoundError("capability <name> not available in sandbox")``.
- Factories receive the invocation's ``ExecutionContext`` (credentials plus the
  project/region bindings) and never perform network I/O.
- The registry is built once at start-up and never mutated afterwards.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

from gcp_broker.gcp.proxies import ClientModuleProxy, CredentialView
from gcp_broker.sandbox.errors import NotFoundError

if TYPE_CHECKING:
    from gcp_broker.sandbox.isolation import ExecutionContext

CapabilityFactory = Callable[["ExecutionContext"], object]

GOOGLE_CLOUD_MODULES: Final[dict[str, str]] = {
    "google.cloud.bigquery": "BigQuery datasets, tables and queries",
    "google.cloud.billing.budgets_v1": "Cloud Billing budgets",
    "google.cloud.billing_v1": "Cloud Billing accounts and project billing info",
    "google.cloud.compute_v1": "Compute Engine instances, disks, networks and zones",
    "google.cloud.container_v1": "Google Kubernetes Engine clusters and node pools",
    "google.cloud.functions_v1": "Cloud Functions",
    "google.cloud.logging": "Cloud Logging entries and sinks",
    "google.cloud.resourcemanager_v3": "Projects, folders and organizations",
    "google.cloud.run_v2": "Cloud Run services, jobs and revisions",
    "google.cloud.storage": "Cloud Storage buckets and objects",
}


@dataclass(frozen=True, slots=True)
class CapabilityEntry:
    """One named capability and the factory that builds it per invocation."""

    name: str
    factory: CapabilityFactory
    description: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("name must be a non-empty string")
        if self.name != self.name.strip() or any(part == "" for part in self.name.split(".")):
            raise ValueError(f"invalid capability name {self.name!r}")
        if not callable(self.factory):
            raise TypeError("factory must be callable")


class CapabilityRegistry:
    """Immutable name -> factory mapping."""

    def __init__(self, entries: Iterable[CapabilityEntry]) -> None:
        mapping: dict[str, CapabilityEntry] = {}
        for entry in entries:
            if entry.name in mapping:
                raise ValueError(f"duplicate capability {entry.name!r}")
            mapping[entry.name] = entry
        self._entries = MappingProxyType(mapping)
        self._namespaces = frozenset(_dotted_prefixes(mapping))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._entries))

    def is_namespace(self, name: str) -> bool:
        """``True`` when ``name`` is only a dotted prefix, e.g. ``google.cloud``."""

        return name in self._namespaces and name not in self._entries

    def resolve(self, name: str, scope: ExecutionContext) -> object:
        entry = self._entries.get(name)
        if entry is None:
            raise NotFoundError(name)
        return entry.factory(scope)

    def describe(self) -> list[dict[str, str]]:
        return [
            {"name": name, "description": self._entries[name].description}
            for name in sorted(self._entries)
        ]


class CapabilityModule:
    """Read-only attribute bag handed to fragments for non-SDK capabilities."""

    __slots__ = ("_members", "_name")

    def __init__(self, name: str, members: dict[str, object]) -> None:
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_members", MappingProxyType(dict(members)))

    def __getattr__(self, attr: str) -> object:
        if attr.startswith("_") or attr not in self._members:
            raise AttributeError(f"{self._name}.{attr} is not available in sandbox")
        return self._members[attr]

    def __setattr__(self, attr: str, value: object) -> None:
        raise AttributeError(f"{self._name} is read-only")

    def __repr__(self) -> str:
        return f"<capability {self._name}>"


def default_registry() -> CapabilityRegistry:
    """The fixed capability set exposed to fragments."""

    entries = [
        CapabilityEntry(
            name=module_name,
            factory=_client_module_factory(module_name),
            description=description,
        )
        for module_name, description in sorted(GOOGLE_CLOUD_MODULES.items())
    ]
    entries.extend(
        [
            CapabilityEntry("google.auth", CredentialView, "Read-only view of the credentials"),
            CapabilityEntry("console", _console_capability, "log/info/warn/error output sink"),
            CapabilityEntry("asyncio", _asyncio_capability, "sleep, gather and wait_for"),
            CapabilityEntry("time", _time_capability, "monotonic, perf_counter and time"),
            CapabilityEntry("json", _json_capability, "dumps and loads"),
        ]
    )
    return CapabilityRegistry(entries)


def _client_module_factory(module_name: str) -> CapabilityFactory:
    def factory(scope: ExecutionContext) -> object:
        return ClientModuleProxy(module_name, scope)

    return factory


def _console_capability(scope: ExecutionContext) -> object:
    return scope.console


def _asyncio_capability(scope: ExecutionContext) -> object:
    async def sleep(delay: float, result: Any = None) -> Any:
        scope.checkpoint()
        await asyncio.sleep(min(max(float(delay), 0.0), scope.deadline.remaining()))
        scope.checkpoint()
        return result

    async def gather(*aws: Awaitable[Any], return_exceptions: bool = False) -> list[Any]:
        scope.checkpoint()
        return await asyncio.gather(*aws, return_exceptions=return_exceptions)

    async def wait_for(aw: Awaitable[Any], timeout: float | None) -> Any:
        scope.checkpoint()
        return await asyncio.wait_for(aw, timeout)

    return CapabilityModule(
        "asyncio",
        {"sleep": sleep, "gather": gather, "wait_for": wait_for, "TimeoutError": TimeoutError},
    )


def _time_capability(_scope: ExecutionContext) -> object:
    return CapabilityModule(
        "time",
        {"monotonic": time.monotonic, "perf_counter": time.perf_counter, "time": time.time},
    )


def _json_capability(_scope: ExecutionContext) -> object:
    def dumps(value: Any, *, indent: int | None = None, sort_keys: bool = False) -> str:
        return json.dumps(value, indent=indent, sort_keys=sort_keys, default=str)

    def loads(text: str | bytes) -> Any:
        return json.loads(text)

    return CapabilityModule("json", {"dumps": dumps, "loads": loads})


def _dotted_prefixes(names: Iterable[str]) -> Iterator[str]:
    for name in names:
        parts = name.split(".")
        for index in range(1, len(parts)):
            yield ".".join(parts[:index])


__all__ = [
    "GOOGLE_CLOUD_MODULES",
    "CapabilityEntry",
    "CapabilityFactory",
    "CapabilityModule",
    "CapabilityRegistry",
    "default_registry",
]
