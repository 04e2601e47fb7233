"""
gcp-broker: async proxies over Google Cloud client libraries.

Purpose
- Let fragments use the synchronous Google Cloud SDKs as awaitable objects
  without blocking the event loop and without reaching host files or logging.

Behaviour
- ``ClientModuleProxy`` stands in for a client module such as
  ``google.cloud.compute_v1``. Attributes ending in ``Client`` become
  ``ClientClassProxy`` objects; message and enum types are returned as-is.
- Calling a ``ClientClassProxy`` performs no I/O. The real client is built on a
  worker thread at the first method call, with the invocation's credentials and
  (where the constructor accepts one) its project.
- Every method call runs through ``asyncio.to_thread``; pagers and iterators are
  drained on the worker thread so fragments receive lists.
- Deadline checkpoints run before and after each call; a result that arrives
  after the context was closed is discarded.
- Members that read or write local files, or install host logging handlers,
  are not exposed.
"""

from __future__ import annotations

import asyncio
import datetime as _dt
import enum
import importlib
import inspect
import threading
import types
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Final

import proto
from google.protobuf import message as protobuf_message

if TYPE_CHECKING:
    from gcp_broker.sandbox.isolation import ExecutionContext

_HIDDEN_MEMBER_FRAGMENTS: Final[tuple[str, ...]] = (
    "filename",
    "from_file",
    "to_file",
    "from_service_account",
    "open",
    # Install handlers on the host root logger.
    "setup_logging",
    "get_default_handler",
)
_PLAIN_TYPES: Final[tuple[type, ...]] = (
    str,
    int,
    float,
    bool,
    bytes,
    _dt.datetime,
    _dt.date,
    _dt.timedelta,
    enum.Enum,
)


class CapabilityUnavailableError(RuntimeError):
    """The client library behind a capability is not installed."""


def is_message(value: object) -> bool:
    """``True`` for proto-plus or raw protobuf message instances."""

    return isinstance(value, (proto.Message, protobuf_message.Message))


def is_message_type(value: object) -> bool:
    if not isinstance(value, type):
        return False
    return issubclass(value, (proto.Message, protobuf_message.Message))


def check_member_name(owner: str, attr: str) -> None:
    if attr.startswith("_"):
        raise AttributeError(attr)
    lowered = attr.lower()
    if any(fragment in lowered for fragment in _HIDDEN_MEMBER_FRAGMENTS):
        raise AttributeError(f"{owner}.{attr} is not available in sandbox")


def materialize(value: object) -> object:
    """Drain pagers and iterators; runs on the worker thread."""

    if isinstance(value, (str, bytes, bytearray, Mapping)) or is_message(value):
        return value
    if isinstance(value, types.GeneratorType) or hasattr(value, "pages"):
        return list(value)  # type: ignore[call-overload]
    if callable(getattr(value, "keys", None)) and callable(getattr(value, "items", None)):
        return dict(value.items())  # type: ignore[attr-defined]
    return value


def wrap_result(value: object, context: ExecutionContext, *, label: str = "result") -> object:
    """Expose plain data directly and wrap anything with behaviour in a proxy."""

    if value is None or isinstance(value, _PLAIN_TYPES) or is_message(value):
        return value
    if isinstance(value, list):
        return [wrap_result(item, context, label=label) for item in value]
    if isinstance(value, tuple):
        return tuple(wrap_result(item, context, label=label) for item in value)
    if isinstance(value, dict):
        return {key: wrap_result(item, context, label=label) for key, item in value.items()}
    return AsyncObjectProxy.for_value(value, context, label=f"{label}:{type(value).__name__}")


def unwrap_argument(value: object) -> object:
    if isinstance(value, AsyncObjectProxy):
        return value._target_for_call()
    if isinstance(value, list):
        return [unwrap_argument(item) for item in value]
    if isinstance(value, tuple):
        return tuple(unwrap_argument(item) for item in value)
    if isinstance(value, dict):
        return {key: unwrap_argument(item) for key, item in value.items()}
    return value


class AsyncObjectProxy:
    """Awaitable facade over a lazily built SDK object."""

    __slots__ = ("_context", "_label", "_loader", "_lock", "_target")

    def __init__(
        self,
        loader: Callable[[], object],
        context: ExecutionContext,
        *,
        label: str,
    ) -> None:
        self._loader = loader
        self._context = context
        self._label = label
        self._lock = threading.Lock()
        self._target: object | None = None

    @classmethod
    def for_value(cls, value: object, context: ExecutionContext, *, label: str) -> AsyncObjectProxy:
        proxy = cls(lambda: value, context, label=label)
        proxy._target = value
        return proxy

    def __getattr__(self, attr: str) -> object:
        check_member_name(self._label, attr)
        target = self._target
        if target is not None:
            value = getattr(target, attr)
            if not callable(value):
                return wrap_result(value, self._context, label=f"{self._label}.{attr}")
        return _AsyncMethod(self, attr)

    def __repr__(self) -> str:
        return f"<async proxy {self._label}>"

    def _target_for_call(self) -> object:
        return self._ensure_target()

    async def _invoke(
        self, attr: str, args: tuple[object, ...], kwargs: dict[str, object]
    ) -> object:
        check_member_name(self._label, attr)
        self._context.checkpoint()
        call_args = tuple(unwrap_argument(item) for item in args)
        call_kwargs = {key: unwrap_argument(item) for key, item in kwargs.items()}
        result = await asyncio.to_thread(self._call_on_thread, attr, call_args, call_kwargs)
        self._context.checkpoint()
        return wrap_result(result, self._context, label=f"{self._label}.{attr}")

    def _call_on_thread(
        self, attr: str, args: tuple[object, ...], kwargs: dict[str, object]
    ) -> object:
        method = getattr(self._ensure_target(), attr)
        return materialize(method(*args, **kwargs))

    def _ensure_target(self) -> object:
        with self._lock:
            if self._target is None:
                self._target = self._loader()
            return self._target


class _AsyncMethod:
    __slots__ = ("_attr", "_owner")

    def __init__(self, owner: AsyncObjectProxy, attr: str) -> None:
        self._owner = owner
        self._attr = attr

    def __call__(self, *args: object, **kwargs: object) -> Any:
        return self._owner._invoke(self._attr, args, kwargs)

    def __repr__(self) -> str:
        return f"<async method {self._attr}>"


class ClientClassProxy:
    """Constructor stand-in; returns an :class:`AsyncObjectProxy` without I/O."""

    __slots__ = ("_class_name", "_context", "_module_name")

    def __init__(self, module_name: str, class_name: str, context: ExecutionContext) -> None:
        self._module_name = module_name
        self._class_name = class_name
        self._context = context

    def __call__(self, *args: object, **kwargs: object) -> AsyncObjectProxy:
        self._context.checkpoint()
        for key in kwargs:
            check_member_name(self._class_name, key)
        module_name = self._module_name
        class_name = self._class_name
        context = self._context

        def build() -> object:
            client_cls = getattr(_import_client_module(module_name), class_name)
            call_kwargs = {key: unwrap_argument(value) for key, value in kwargs.items()}
            call_kwargs.setdefault("credentials", _credentials_for(context))
            if "project" not in call_kwargs and _accepts_parameter(client_cls, "project"):
                call_kwargs["project"] = context.project_id
            return client_cls(*(unwrap_argument(item) for item in args), **call_kwargs)

        return AsyncObjectProxy(build, context, label=f"{module_name}.{class_name}")

    def __repr__(self) -> str:
        return f"<client class {self._module_name}.{self._class_name}>"


class ClientModuleProxy:
    """Stand-in for a Google Cloud client module."""

    __slots__ = ("_context", "_module_name")

    def __init__(self, module_name: str, context: ExecutionContext) -> None:
        self._module_name = module_name
        self._context = context

    @property
    def module_name(self) -> str:
        return self._module_name

    def __getattr__(self, attr: str) -> object:
        check_member_name(self._module_name, attr)
        if attr.endswith("Client"):
            return ClientClassProxy(self._module_name, attr, self._context)
        value = getattr(_import_client_module(self._module_name), attr)
        if is_message_type(value) or (isinstance(value, type) and issubclass(value, enum.Enum)):
            return value
        raise AttributeError(f"{self._module_name}.{attr} is not available in sandbox")

    def __repr__(self) -> str:
        return f"<client module {self._module_name}>"


class CredentialView:
    """Read-only view of the shared credential handle for fragments."""

    __slots__ = ("_context",)

    def __init__(self, context: ExecutionContext) -> None:
        self._context = context

    @property
    def scopes(self) -> tuple[str, ...]:
        handle = self._context.credentials
        return handle.scopes if handle is not None else ()

    async def default_project(self) -> str | None:
        handle = self._context.credentials
        if handle is None:
            return None
        self._context.checkpoint()
        project = await asyncio.to_thread(handle.default_project)
        self._context.checkpoint()
        return project

    def __repr__(self) -> str:
        return "<credentials>"


def _import_client_module(module_name: str) -> types.ModuleType:
    try:
        return importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise CapabilityUnavailableError(
            f"{module_name} is registered but its client library is not installed"
        ) from exc


def _credentials_for(context: ExecutionContext) -> object:
    if context.credentials is None:
        return None
    return context.credentials.credentials()


def _accepts_parameter(client_cls: type, name: str) -> bool:
    try:
        return name in inspect.signature(client_cls).parameters
    except (TypeError, ValueError):
        return False


__all__ = [
    "AsyncObjectProxy",
    "CapabilityUnavailableError",
    "ClientClassProxy",
    "ClientModuleProxy",
    "CredentialView",
    "check_member_name",
    "is_message",
    "is_message_type",
    "materialize",
    "unwrap_argument",
    "wrap_result",
]
