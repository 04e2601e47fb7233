"""Lazy Application Default Credentials handle built on ``google-auth``."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import google.auth
import google.auth.exceptions
import structlog

from gcp_broker.constants import DEFAULT_SCOPES

if TYPE_CHECKING:
    from google.auth.credentials import Credentials
    from structlog.typing import FilteringBoundLogger

CredentialLoader = Callable[[Sequence[str], str | None], "tuple[Credentials, str | None]"]


class CredentialError(RuntimeError):
    """Raised when credentials cannot be discovered."""


class CredentialHandle:
    """Shared, read-only access to Google credentials.

    Discovery (``google.auth.default`` or an explicit key file) is deferred until
    first use and always happens on the calling thread; the engine and handlers
    only call it from worker threads so the event loop never blocks on the
    metadata server.
    """

    def __init__(
        self,
        *,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        credentials_file: str | None = None,
        loader: CredentialLoader | None = None,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        if not scopes:
            raise ValueError("scopes must not be empty")
        self._scopes = tuple(scopes)
        self._credentials_file = credentials_file
        self._loader = loader if loader is not None else _load_google_credentials
        self._lock = threading.Lock()
        self._resolved: tuple[Credentials, str | None] | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        google_config: Mapping[str, object],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> CredentialHandle:
        env = os.environ if environ is None else environ
        raw_scopes = google_config.get("scopes")
        scopes = (
            tuple(str(item) for item in raw_scopes)
            if isinstance(raw_scopes, (list, tuple)) and raw_scopes
            else DEFAULT_SCOPES
        )
        credentials_file: str | None = None
        env_name = google_config.get("credentials_file_env")
        if isinstance(env_name, str) and env_name:
            candidate = env.get(env_name, "").strip()
            credentials_file = candidate or None
        return cls(scopes=scopes, credentials_file=credentials_file)

    @property
    def scopes(self) -> tuple[str, ...]:
        return self._scopes

    @property
    def is_resolved(self) -> bool:
        return self._resolved is not None

    def credentials(self) -> Credentials:
        return self._resolve()[0]

    def default_project(self) -> str | None:
        return self._resolve()[1]

    def _resolve(self) -> tuple[Credentials, str | None]:
        with self._lock:
            if self._resolved is None:
                try:
                    self._resolved = self._loader(self._scopes, self._credentials_file)
                except google.auth.exceptions.DefaultCredentialsError as exc:
                    raise CredentialError(str(exc)) from exc
                self._logger.info(
                    "credentials_resolved",
                    source="file" if self._credentials_file else "default",
                    default_project=self._resolved[1],
                )
            return self._resolved


def _load_google_credentials(
    scopes: Sequence[str], credentials_file: str | None
) -> tuple[Any, str | None]:
    if credentials_file is not None:
        return google.auth.load_credentials_from_file(credentials_file, scopes=list(scopes))
    return google.auth.default(scopes=list(scopes))


__all__ = ["CredentialError", "CredentialHandle", "CredentialLoader"]
