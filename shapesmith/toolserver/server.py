"""MCP server exposing the CAD tools registry."""

from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server

from shapesmith.errors import ToolInvocationError
from shapesmith.models.tools import ToolOutput, ToolOutputImage, ToolOutputText
from shapesmith.tools.registry import ToolsRegistry
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

SERVER_NAME = "onshape-stl-importer"
SERVER_VERSION = "2.0.0"


def to_mcp_content(output: ToolOutput) -> list[types.TextContent | types.ImageContent]:
    """Convert a tool output into MCP content items."""
    content: list[types.TextContent | types.ImageContent] = []
    for item in output.content:
        if isinstance(item, ToolOutputText):
            content.append(types.TextContent(type="text", text=item.text))
        elif isinstance(item, ToolOutputImage):
            content.append(types.ImageContent(type="image", data=item.data, mimeType=item.mime_type))
    return content


def build_tool_server(registry: ToolsRegistry) -> Server:
    """Create a new MCP server instance bound to ``registry``.

    The HTTP transport calls this once per request, so an instance never
    outlives the request that created it.
    """
    server: Server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(name=descriptor.name, description=descriptor.description, inputSchema=descriptor.input_schema)
            for descriptor in registry.descriptors()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any] | None) -> list[types.TextContent | types.ImageContent]:
        output = await registry.call(name, arguments or {})
        if output.is_error:
            # The SDK turns a raised error into a result with isError set
            raise ToolInvocationError(output.text)
        return to_mcp_content(output)

    return server
