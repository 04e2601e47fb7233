"""MCP stdio server exposing the tool catalogue."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import mcp.types as types
import structlog
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from gcp_broker.runtime import BrokerRuntime


class BrokerServer:
    """Bind the dispatcher to the MCP ``list_tools``/``call_tool`` requests."""

    def __init__(
        self,
        runtime: BrokerRuntime,
        *,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        server_cfg = runtime.config["server"]
        self._runtime = runtime
        self._name = str(server_cfg["name"])
        self._version = str(server_cfg["version"])
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._server: Server[Any, Any] = Server(self._name, version=self._version)
        self._server.list_tools()(self.list_tools)
        self._server.call_tool()(self.call_tool)

    @property
    def server(self) -> Server[Any, Any]:
        return self._server

    async def list_tools(self) -> list[types.Tool]:
        self._logger.debug("listing_tools")
        tools: list[types.Tool] = []
        for definition in self._runtime.catalog:
            payload = definition.to_dict()
            tools.append(
                types.Tool(
                    name=payload["name"],
                    description=payload["description"],
                    inputSchema=payload["inputSchema"],
                )
            )
        return tools

    async def call_tool(
        self, name: str, arguments: Mapping[str, Any] | None
    ) -> list[types.TextContent]:
        response = await self._runtime.dispatcher.call(name, arguments)
        return [types.TextContent(type="text", text=response.text)]

    async def serve_stdio(self) -> None:
        selection = self._runtime.selection
        self._logger.info("server_starting", server=self._name, version=self._version)
        if selection.is_project_selected:
            self._logger.info("project_preselected", project_id=selection.selected_project)
        else:
            self._logger.info(
                "no_project_selected",
                hint="Use list-projects and select-project tools to get started.",
            )
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self._logger.info("server_shutting_down", server=self._name)
        self._runtime.shutdown()


__all__ = ["BrokerServer"]
