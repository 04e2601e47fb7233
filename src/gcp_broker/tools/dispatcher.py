"""Route tool calls to the sandbox engine or a thin handler."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import structlog

from gcp_broker.observability.logging import correlation_scope
from gcp_broker.sandbox.errors import SandboxError
from gcp_broker.tools.catalog import ToolArgumentError, ToolCatalogError, ToolDefinition
from gcp_broker.tools.handlers import ToolResponse

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from gcp_broker.sandbox.engine import ExecutionOutcome, SandboxEngine
    from gcp_broker.tools.handlers import BillingHandlers, ProjectHandlers
    from gcp_broker.utils.retry import RetrySupervisor

ToolHandler = Callable[[Mapping[str, object]], Awaitable[ToolResponse]]

RUN_CODE_TOOL = "run-gcp-code"


class ToolDispatcher:
    """Resolve a tool name to its handler and turn every outcome into a response."""

    def __init__(
        self,
        catalog: Iterable[ToolDefinition],
        *,
        engine: SandboxEngine,
        supervisor: RetrySupervisor,
        projects: ProjectHandlers,
        billing: BillingHandlers,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._supervisor = supervisor
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._definitions = MappingProxyType({item.name: item for item in catalog})

        routes: dict[str, ToolHandler] = {
            RUN_CODE_TOOL: self._run_code,
            "list-projects": projects.list_projects,
            "select-project": projects.select_project,
            "get-billing-info": billing.get_billing_info,
            "get-cost-forecast": billing.get_cost_forecast,
            "get-billing-account": billing.get_billing_account,
            "list-billing-accounts": billing.list_billing_accounts,
        }
        unrouted = sorted(set(self._definitions) - set(routes))
        if unrouted:
            raise ToolCatalogError(f"no handler for tools: {', '.join(unrouted)}")
        self._routes = MappingProxyType(
            {name: routes[name] for name in self._definitions}
        )

    @property
    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(self._definitions.values())

    async def call(self, name: str, arguments: Mapping[str, object] | None) -> ToolResponse:
        with correlation_scope(tool=name if isinstance(name, str) and name.strip() else None):
            definition = self._definitions.get(name)
            if definition is None:
                self._logger.warning("unknown_tool", tool_name=name)
                return ToolResponse.failure(f"Unknown tool: {name}")
            try:
                validated = definition.validate_arguments(arguments)
            except ToolArgumentError as exc:
                self._logger.warning("invalid_tool_arguments", tool_name=name, error=str(exc))
                return ToolResponse.failure(str(exc))

            self._logger.info("tool_called", tool_name=name)
            try:
                return await self._routes[name](validated)
            except Exception as exc:  # noqa: BLE001 - the transport never sees handler errors.
                self._logger.error(
                    "tool_failed", tool_name=name, error_type=type(exc).__name__, error=str(exc)
                )
                return ToolResponse.failure(f"Failed to run {name}: {exc}")

    async def _run_code(self, arguments: Mapping[str, object]) -> ToolResponse:
        reasoning = arguments.get("reasoning")
        code = arguments.get("code")
        project_id = _optional_text(arguments.get("projectId"))
        region = _optional_text(arguments.get("region"))
        self._logger.info("executing_gcp_code", reasoning=reasoning)

        outcomes: list[ExecutionOutcome] = []

        async def attempt() -> Any:
            outcome = await self._engine.execute(str(code), project_id, region)
            outcomes.append(outcome)
            return outcome.unwrap()

        try:
            result = await self._supervisor.run(attempt, operation=RUN_CODE_TOOL)
        except SandboxError as exc:
            last = outcomes[-1] if outcomes else None
            extra: dict[str, Any] = {"reasoning": reasoning, "errorKind": exc.kind}
            if last is not None:
                extra["attempts"] = len(outcomes)
                if last.project_id is not None:
                    extra["projectId"] = last.project_id
                if last.console_output:
                    extra["console"] = list(last.console_output)
            return ToolResponse.failure(f"Failed to execute GCP code: {exc.message}", **extra)

        final = outcomes[-1]
        payload: dict[str, Any] = {
            "reasoning": reasoning,
            "projectId": final.project_id,
            "region": final.region,
            "result": result,
        }
        if final.console_output:
            payload["console"] = list(final.console_output)
        return ToolResponse.success(**payload)


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = ["RUN_CODE_TOOL", "ToolDispatcher", "ToolHandler"]
