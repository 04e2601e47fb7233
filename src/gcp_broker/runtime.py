"""
gcp-broker: process wiring.

Purpose
- Build the single set of long-lived collaborators (selection, registry,
  credentials, engine, supervisor, handlers, dispatcher) from an effective
  config mapping. Nothing here performs network I/O.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from gcp_broker.gcp.clients import ClientFactory, GoogleClientFactory
from gcp_broker.gcp.credentials import CredentialHandle
from gcp_broker.sandbox.capabilities import CapabilityRegistry, default_registry
from gcp_broker.sandbox.engine import SandboxEngine
from gcp_broker.selection import SelectionState
from gcp_broker.tools.catalog import ToolDefinition, load_catalog
from gcp_broker.tools.dispatcher import ToolDispatcher
from gcp_broker.tools.handlers import BillingHandlers, ProjectHandlers
from gcp_broker.utils.retry import RetrySupervisor


@dataclass(frozen=True, slots=True)
class BrokerRuntime:
    config: Mapping[str, Any]
    selection: SelectionState
    registry: CapabilityRegistry
    credentials: CredentialHandle
    engine: SandboxEngine
    supervisor: RetrySupervisor
    dispatcher: ToolDispatcher

    @property
    def catalog(self) -> tuple[ToolDefinition, ...]:
        return self.dispatcher.definitions

    def shutdown(self) -> None:
        self.selection.clear()


def build_runtime(
    config: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
    credentials: CredentialHandle | None = None,
    clients: ClientFactory | None = None,
    registry: CapabilityRegistry | None = None,
) -> BrokerRuntime:
    """Wire a runtime from a validated config mapping."""

    env = os.environ if environ is None else environ
    logger = structlog.get_logger(__name__)

    selection_cfg = config["selection"]
    sandbox_cfg = config["sandbox"]
    retry_cfg = config["retry"]

    selection = SelectionState(default_region=selection_cfg["default_region"])
    initial_env = selection_cfg.get("initial_project_env")
    initial_project = env.get(initial_env, "").strip() if initial_env else ""
    if initial_project:
        selection.select(initial_project)

    handle = (
        credentials
        if credentials is not None
        else CredentialHandle.from_config(config["google"], environ=env)
    )
    capability_registry = registry if registry is not None else default_registry()
    supervisor = RetrySupervisor(
        max_attempts=retry_cfg["max_attempts"],
        delay_seconds=retry_cfg["delay_seconds"],
        backoff=retry_cfg["backoff"],
    )
    engine = SandboxEngine(
        capability_registry,
        selection,
        credentials=handle,
        timeout_seconds=sandbox_cfg["timeout_seconds"],
        max_concurrent=sandbox_cfg["max_concurrent"],
        max_console_lines=sandbox_cfg["max_console_lines"],
        teardown_grace_seconds=sandbox_cfg["teardown_grace_seconds"],
    )
    client_factory = clients if clients is not None else GoogleClientFactory(handle)
    handler_args = {"call_timeout_seconds": sandbox_cfg["timeout_seconds"]}
    dispatcher = ToolDispatcher(
        load_catalog(),
        engine=engine,
        supervisor=supervisor,
        projects=ProjectHandlers(client_factory, selection, supervisor, **handler_args),
        billing=BillingHandlers(client_factory, selection, supervisor, **handler_args),
    )

    logger.info(
        "runtime_built",
        capabilities=len(capability_registry),
        tools=len(dispatcher.definitions),
        selected_project=selection.selected_project,
        selected_region=selection.selected_region,
    )
    return BrokerRuntime(
        config=config,
        selection=selection,
        registry=capability_registry,
        credentials=handle,
        engine=engine,
        supervisor=supervisor,
        dispatcher=dispatcher,
    )


__all__ = ["BrokerRuntime", "build_runtime"]
