"""Unit tests for the lazy credential handle and the handler client factory."""

from __future__ import annotations

import sys
import threading
import types
from collections.abc import Sequence

import google.auth.exceptions
import pytest

from gcp_broker.constants import DEFAULT_SCOPES
from gcp_broker.gcp.clients import ClientFactory, GoogleClientFactory
from gcp_broker.gcp.credentials import CredentialError, CredentialHandle
from gcp_broker.gcp.proxies import CapabilityUnavailableError


class _CountingLoader:
    def __init__(self, project: str | None = "adc-project") -> None:
        self.calls: list[tuple[tuple[str, ...], str | None]] = []
        self.project = project

    def __call__(self, scopes: Sequence[str], path: str | None) -> tuple[object, str | None]:
        self.calls.append((tuple(scopes), path))
        return (f"credentials-{len(self.calls)}", self.project)


def test_discovery_is_deferred_and_cached() -> None:
    loader = _CountingLoader()
    handle = CredentialHandle(loader=loader)

    assert not handle.is_resolved
    assert loader.calls == []

    assert handle.credentials() == "credentials-1"
    assert handle.default_project() == "adc-project"
    assert handle.is_resolved
    assert loader.calls == [(DEFAULT_SCOPES, None)]


def test_concurrent_first_use_loads_once() -> None:
    loader = _CountingLoader()
    handle = CredentialHandle(loader=loader)
    barrier = threading.Barrier(6)
    seen: list[object] = []

    def worker() -> None:
        barrier.wait()
        seen.append(handle.credentials())

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(loader.calls) == 1
    assert set(seen) == {"credentials-1"}


def test_missing_default_credentials_become_credential_error() -> None:
    def loader(scopes: Sequence[str], path: str | None) -> tuple[object, str | None]:
        raise google.auth.exceptions.DefaultCredentialsError("Could not automatically determine credentials")

    handle = CredentialHandle(loader=loader)

    with pytest.raises(CredentialError, match="Could not automatically determine credentials"):
        handle.credentials()
    assert not handle.is_resolved


def test_from_config_reads_scopes_and_key_file_env() -> None:
    handle = CredentialHandle.from_config(
        {
            "scopes": ["https://www.googleapis.com/auth/cloud-platform.read-only"],
            "credentials_file_env": "BROKER_KEY_FILE",
        },
        environ={"BROKER_KEY_FILE": " /secrets/key.json "},
    )

    assert handle.scopes == ("https://www.googleapis.com/auth/cloud-platform.read-only",)
    assert handle._credentials_file == "/secrets/key.json"


def test_from_config_falls_back_to_default_scopes() -> None:
    handle = CredentialHandle.from_config({"scopes": []}, environ={})

    assert handle.scopes == DEFAULT_SCOPES
    assert handle._credentials_file is None


def test_empty_scopes_are_rejected() -> None:
    with pytest.raises(ValueError, match="scopes must not be empty"):
        CredentialHandle(scopes=(), loader=_CountingLoader())


class _ProjectsClient:
    def __init__(self, *, credentials: object) -> None:
        self.credentials = credentials


def test_client_factory_builds_and_caches_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    module = types.ModuleType("google.cloud.resourcemanager_v3")
    module.ProjectsClient = _ProjectsClient  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "google.cloud.resourcemanager_v3", module)
    factory = GoogleClientFactory(CredentialHandle(loader=_CountingLoader()))

    first = factory.projects_client()
    second = factory.projects_client()

    assert isinstance(factory, ClientFactory)
    assert first is second
    assert first.credentials == "credentials-1"


def test_client_factory_reports_missing_library(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "google.cloud.billing_v1", None)
    factory = GoogleClientFactory(CredentialHandle(loader=_CountingLoader()))

    with pytest.raises(CapabilityUnavailableError, match="google.cloud.billing_v1 is not installed"):
        factory.billing_client()
