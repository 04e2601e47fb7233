"""
gcp-broker: thin tool handlers.

Purpose
- Serve the fixed, non-code tools: each one makes a single SDK call (or none)
  and shapes the result into a JSON text response.

Behaviour
- SDK clients are synchronous; every call runs on a worker thread through
  ``asyncio.to_thread``, bounded by a per-call timeout and supervised by the
  shared ``RetrySupervisor``.
- Failures never escape: they become ``{"success": false, "error": ...}``
  responses of the form ``Failed to <operation>: <message>``; operation
  names already name their resource.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Final, TypeVar

import structlog

from gcp_broker.constants import DEFAULT_TIMEOUT_SECONDS
from gcp_broker.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from gcp_broker.gcp.clients import ClientFactory
    from gcp_broker.selection import SelectionState
    from gcp_broker.utils.retry import RetrySupervisor

T = TypeVar("T")

DEFAULT_FORECAST_MONTHS: Final[int] = 3
NO_PROJECT_SELECTED: Final[str] = "No project selected. Please select a project first."
FORECAST_GUIDANCE: Final[dict[str, object]] = {
    "message": "Cost forecasting requires setup of billing export to BigQuery",
    "recommendations": [
        "Enable billing export to BigQuery",
        "Set up Cloud Billing Reports API",
        "Use Cloud Cost Management tools for detailed forecasting",
    ],
}


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """JSON payload returned to the caller as a single text content item."""

    payload: Mapping[str, Any]
    is_error: bool = False
    content_type: str = field(default="text")

    @property
    def text(self) -> str:
        return json.dumps(self.payload, indent=2, ensure_ascii=False, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {"content": [{"type": self.content_type, "text": self.text}]}

    @classmethod
    def success(cls, **payload: Any) -> ToolResponse:
        return cls({"success": True, **payload})

    @classmethod
    def failure(cls, error: str, **payload: Any) -> ToolResponse:
        return cls({"success": False, **payload, "error": error}, is_error=True)


class ResourceHandlers:
    """Shared plumbing for one resource's handlers."""

    resource_name: ClassVar[str] = "resource"

    def __init__(
        self,
        clients: ClientFactory,
        selection: SelectionState,
        supervisor: RetrySupervisor,
        *,
        call_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        if call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds must be > 0")
        self._clients = clients
        self._selection = selection
        self._supervisor = supervisor
        self._call_timeout_seconds = float(call_timeout_seconds)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run blocking ``fn`` on a worker thread under timeout and retry."""

        return await self._supervisor.run(
            lambda: run_with_timeout(asyncio.to_thread(fn), self._call_timeout_seconds),
            operation=operation,
        )

    def _target_project(self, project_id: object) -> str | None:
        if isinstance(project_id, str) and project_id.strip():
            return project_id.strip()
        return self._selection.selected_project

    def _failure(self, operation: str, error: BaseException) -> ToolResponse:
        message = str(error) or type(error).__name__
        self._logger.warning(
            "tool_handler_failed",
            operation=operation,
            resource=self.resource_name,
            error_type=type(error).__name__,
            error=message,
        )
        return ToolResponse.failure(f"Failed to {operation}: {message}")


class ProjectHandlers(ResourceHandlers):
    resource_name = "project"

    async def list_projects(self, arguments: Mapping[str, object]) -> ToolResponse:
        del arguments
        try:
            self._logger.info("listing_projects")
            client = self._clients.projects_client
            projects = await self._call(
                "list projects",
                lambda: [project_summary(item) for item in client().search_projects()],
            )
        except Exception as exc:  # noqa: BLE001 - converted to a failure response.
            return self._failure("list projects", exc)
        self._logger.info("projects_listed", count=len(projects))
        return ToolResponse.success(projects=projects, count=len(projects))

    async def select_project(self, arguments: Mapping[str, object]) -> ToolResponse:
        try:
            project_id = arguments.get("projectId")
            if not isinstance(project_id, str) or not project_id.strip():
                raise ValueError("Missing required parameter: projectId")
            project_id = project_id.strip()
            raw_region = arguments.get("region")
            region = raw_region.strip() if isinstance(raw_region, str) and raw_region.strip() else None

            self._logger.info("selecting_project", project_id=project_id)
            client = self._clients.projects_client
            project = await self._call(
                "select project",
                lambda: client().get_project(name=f"projects/{project_id}"),
            )
            if project is None:
                raise LookupError(f"Project {project_id} not found or not accessible")

            snapshot = self._selection.select(project_id, region)
        except Exception as exc:  # noqa: BLE001 - converted to a failure response.
            return self._failure("select project", exc)

        summary = project_summary(project)
        return ToolResponse.success(
            selectedProject=snapshot.project_id,
            selectedRegion=snapshot.region,
            project={key: summary[key] for key in ("projectId", "name", "projectNumber", "state")},
        )


class BillingHandlers(ResourceHandlers):
    resource_name = "billing"

    async def get_billing_info(self, arguments: Mapping[str, object]) -> ToolResponse:
        try:
            project_id = self._target_project(arguments.get("projectId"))
            if project_id is None:
                raise ValueError(NO_PROJECT_SELECTED)
            self._logger.info("getting_billing_info", project_id=project_id)
            client = self._clients.billing_client
            billing_info = await self._call(
                "get billing info", lambda: _billing_info(client(), project_id)
            )
        except Exception as exc:  # noqa: BLE001 - converted to a failure response.
            return self._failure("get billing info", exc)
        return ToolResponse.success(projectId=project_id, billingInfo=billing_info)

    async def get_cost_forecast(self, arguments: Mapping[str, object]) -> ToolResponse:
        try:
            project_id = self._target_project(arguments.get("projectId"))
            if project_id is None:
                raise ValueError(NO_PROJECT_SELECTED)
            months = arguments.get("months", DEFAULT_FORECAST_MONTHS)
            if isinstance(months, bool) or not isinstance(months, (int, float)) or months <= 0:
                raise ValueError("months must be a positive number")
        except Exception as exc:  # noqa: BLE001 - converted to a failure response.
            return self._failure("get cost forecast", exc)

        self._logger.info("cost_forecast_requested", project_id=project_id, months=months)
        return ToolResponse.success(
            projectId=project_id,
            forecastPeriodMonths=months,
            forecast=json.loads(json.dumps(FORECAST_GUIDANCE)),
        )

    async def get_billing_account(self, arguments: Mapping[str, object]) -> ToolResponse:
        try:
            account_id = arguments.get("billingAccountId")
            client = self._clients.billing_client
            if isinstance(account_id, str) and account_id.strip():
                name = _billing_account_name(account_id.strip())
                self._logger.info("getting_billing_account", billing_account=name)
                account = await self._call(
                    "get billing account",
                    lambda: billing_account_summary(client().get_billing_account(name=name)),
                )
                return ToolResponse.success(billingAccount=account)

            self._logger.info("listing_billing_accounts")
            accounts = await self._call(
                "get billing account",
                lambda: [billing_account_summary(item) for item in client().list_billing_accounts()],
            )
        except Exception as exc:  # noqa: BLE001 - converted to a failure response.
            return self._failure("get billing account", exc)
        return ToolResponse.success(billingAccounts=accounts)

    async def list_billing_accounts(self, arguments: Mapping[str, object]) -> ToolResponse:
        del arguments
        try:
            self._logger.info("listing_billing_accounts")
            client = self._clients.billing_client
            accounts = await self._call(
                "list billing accounts",
                lambda: [billing_account_summary(item) for item in client().list_billing_accounts()],
            )
        except Exception as exc:  # noqa: BLE001 - converted to a failure response.
            return self._failure("list billing accounts", exc)
        self._logger.info("billing_accounts_listed", count=len(accounts))
        return ToolResponse.success(billingAccounts=accounts, count=len(accounts))


def project_summary(project: object) -> dict[str, Any]:
    """Flatten a Resource Manager ``Project`` into caller-facing fields."""

    resource_name = str(getattr(project, "name", "") or "")
    number = resource_name.rsplit("/", 1)[-1] if resource_name.startswith("projects/") else ""
    return {
        "projectId": getattr(project, "project_id", None),
        "name": getattr(project, "display_name", None) or resource_name or None,
        "projectNumber": number or "unknown",
        "state": _enum_name(getattr(project, "state", None)),
        "createTime": _timestamp(getattr(project, "create_time", None)),
    }


def billing_account_summary(account: object) -> dict[str, Any]:
    return {
        "name": getattr(account, "name", None),
        "displayName": getattr(account, "display_name", None),
        "open": getattr(account, "open_", getattr(account, "open", None)),
        "masterBillingAccount": getattr(account, "master_billing_account", None) or None,
    }


def _billing_info(client: Any, project_id: str) -> dict[str, Any]:
    info = client.get_project_billing_info(name=f"projects/{project_id}")
    account_name = getattr(info, "billing_account_name", "") or ""
    if not account_name:
        return {
            "billingEnabled": False,
            "message": "No billing account associated with this project",
        }
    account = client.get_billing_account(name=account_name)
    return {
        "billingEnabled": bool(getattr(info, "billing_enabled", False)),
        "billingAccountName": account_name,
        "billingAccount": billing_account_summary(account),
    }


def _billing_account_name(account_id: str) -> str:
    if account_id.startswith("billingAccounts/"):
        return account_id
    return f"billingAccounts/{account_id}"


def _enum_name(value: object) -> object:
    name = getattr(value, "name", None)
    if isinstance(name, str):
        return name
    return value


def _timestamp(value: object) -> str | None:
    if value is None:
        return None
    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return str(isoformat())
    return str(value)


__all__ = [
    "DEFAULT_FORECAST_MONTHS",
    "FORECAST_GUIDANCE",
    "BillingHandlers",
    "ProjectHandlers",
    "ResourceHandlers",
    "ToolResponse",
    "billing_account_summary",
    "project_summary",
]
