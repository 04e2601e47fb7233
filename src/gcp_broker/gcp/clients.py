"""Client factory used by the thin tool handlers."""

from __future__ import annotations

import importlib
import threading
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from gcp_broker.gcp.proxies import CapabilityUnavailableError

if TYPE_CHECKING:
    from gcp_broker.gcp.credentials import CredentialHandle


@runtime_checkable
class ClientFactory(Protocol):
    """Build synchronous SDK clients; called from worker threads only."""

    def projects_client(self) -> Any: ...

    def billing_client(self) -> Any: ...


class GoogleClientFactory:
    """Build and cache Resource Manager and Cloud Billing clients."""

    def __init__(self, credentials: CredentialHandle) -> None:
        self._credentials = credentials
        self._lock = threading.Lock()
        self._clients: dict[str, Any] = {}

    def projects_client(self) -> Any:
        return self._client("google.cloud.resourcemanager_v3", "ProjectsClient")

    def billing_client(self) -> Any:
        return self._client("google.cloud.billing_v1", "CloudBillingClient")

    def _client(self, module_name: str, class_name: str) -> Any:
        key = f"{module_name}.{class_name}"
        with self._lock:
            cached = self._clients.get(key)
            if cached is not None:
                return cached
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError as exc:
            raise CapabilityUnavailableError(f"{module_name} is not installed") from exc
        client = getattr(module, class_name)(credentials=self._credentials.credentials())
        with self._lock:
            return self._clients.setdefault(key, client)


__all__ = ["ClientFactory", "GoogleClientFactory"]
