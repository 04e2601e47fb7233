"""
gcp-broker: selection state.

Purpose
- Hold the currently chosen target project and region used as defaults when a
  request omits them.

Lifecycle
- One instance per broker runtime, created at start-up as "no project, default
  region", passed explicitly to the engine and the thin handlers, and cleared on
  graceful shutdown. Tests construct their own isolated instances.

Invariants
- ``selected_region`` is never empty.
- ``selected_project`` is ``None`` or a non-empty identifier.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from gcp_broker.constants import DEFAULT_REGION

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger


@dataclass(frozen=True, slots=True)
class SelectionSnapshot:
    """Point-in-time copy of the selection."""

    project_id: str | None
    region: str

    def to_dict(self) -> dict[str, str | None]:
        return {"projectId": self.project_id, "region": self.region}


class SelectionState:
    """Mutable project/region selection guarded by a lock."""

    def __init__(
        self,
        *,
        default_region: str = DEFAULT_REGION,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._default_region = _require_identifier(default_region, "default_region")
        self._lock = threading.Lock()
        self._project_id: str | None = None
        self._region = self._default_region
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def default_region(self) -> str:
        return self._default_region

    @property
    def selected_project(self) -> str | None:
        with self._lock:
            return self._project_id

    @property
    def selected_region(self) -> str:
        with self._lock:
            return self._region

    @property
    def is_project_selected(self) -> bool:
        return self.selected_project is not None

    def snapshot(self) -> SelectionSnapshot:
        with self._lock:
            return SelectionSnapshot(project_id=self._project_id, region=self._region)

    def select(self, project_id: str, region: str | None = None) -> SelectionSnapshot:
        """Select ``project_id`` (already confirmed to exist) and optionally a region."""

        project = _require_identifier(project_id, "project_id")
        new_region = _require_identifier(region, "region") if region is not None else None
        with self._lock:
            self._project_id = project
            if new_region is not None:
                self._region = new_region
            current = SelectionSnapshot(project_id=self._project_id, region=self._region)
        self._logger.info("project_selected", project_id=current.project_id, region=current.region)
        return current

    def set_region(self, region: str) -> None:
        normalized = _require_identifier(region, "region")
        with self._lock:
            self._region = normalized
        self._logger.info("region_selected", region=normalized)

    def clear(self) -> None:
        """Forget the selected project and restore the default region."""

        with self._lock:
            self._project_id = None
            self._region = self._default_region
        self._logger.info("selection_cleared", region=self._default_region)


def _require_identifier(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    return normalized


__all__ = ["SelectionSnapshot", "SelectionState"]
