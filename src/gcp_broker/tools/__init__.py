"""Tool catalogue, dispatcher and thin handlers."""

from gcp_broker.tools.catalog import (
    ToolArgumentError,
    ToolCatalogError,
    ToolDefinition,
    load_catalog,
)
from gcp_broker.tools.dispatcher import RUN_CODE_TOOL, ToolDispatcher
from gcp_broker.tools.handlers import BillingHandlers, ProjectHandlers, ToolResponse

__all__ = [
    "RUN_CODE_TOOL",
    "BillingHandlers",
    "ProjectHandlers",
    "ToolArgumentError",
    "ToolCatalogError",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolResponse",
    "load_catalog",
]
