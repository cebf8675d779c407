"""Serve the CAD tools over stdio for a local MCP client.

Run with ``python -m shapesmith.toolserver.stdio``.
"""

import anyio
from dotenv import load_dotenv
from mcp.server.stdio import stdio_server

from shapesmith.clients.onshape import OnshapeClient
from shapesmith.config import Settings
from shapesmith.services.geometry import OpenSCADCompiler
from shapesmith.toolserver.server import build_tool_server
from shapesmith.tools.registry import ToolsRegistry
from shapesmith.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)


async def serve(settings: Settings) -> None:
    """Run one MCP session on stdin/stdout until the client disconnects."""
    onshape = OnshapeClient.from_settings(settings)
    registry = ToolsRegistry(OpenSCADCompiler.from_settings(settings), onshape)
    server = build_tool_server(registry)

    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.info(f"Onshape MCP server running on stdio with tools: {registry.get_tool_names()}")
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await onshape.aclose()


def main() -> None:
    """Console entry point."""
    load_dotenv()
    settings = Settings.from_env()
    # stdout carries the protocol
    setup_logging(LogConfig(level=settings.log_level, stream="stderr"))
    anyio.run(serve, settings)


if __name__ == "__main__":
    main()
