"""Client side of the tool protocol: connects to the tool server over MCP."""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Literal

import mcp.types as types
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from shapesmith.config import Settings
from shapesmith.errors import ToolInvocationError
from shapesmith.models.tools import ToolDescriptor, ToolOutput, ToolOutputImage, ToolOutputItem, ToolOutputText
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_content(content: list[Any]) -> list[ToolOutputItem]:
    """Convert MCP result content into typed output items."""
    items: list[ToolOutputItem] = []
    for item in content:
        if isinstance(item, types.TextContent):
            items.append(ToolOutputText(text=item.text))
        elif isinstance(item, types.ImageContent):
            items.append(ToolOutputImage(data=item.data, mime_type=item.mimeType))
        elif isinstance(item, types.EmbeddedResource):
            resource = item.resource
            if isinstance(resource, types.TextResourceContents):
                items.append(ToolOutputText(text=resource.text))
            else:
                items.append(ToolOutputText(text=f"[binary resource {resource.uri}]"))
        else:
            items.append(ToolOutputText(text=item.model_dump_json() if hasattr(item, "model_dump_json") else str(item)))
    return items


class ToolBridge:
    """Lazily connected MCP client for the CAD tool server.

    The first caller starts the connection; concurrent first callers await
    the same start-up. Descriptors are fetched once and cached for the
    lifetime of the connection. The connection is owned by a single
    background task so it is opened and closed in the same task.
    """

    def __init__(
        self,
        transport: Literal["stdio", "http"] = "stdio",
        command: str = "python",
        args: list[str] | None = None,
        url: str | None = None,
        token: str | None = None,
    ):
        """Initialize the bridge without connecting.

        Args:
            transport: ``stdio`` to spawn the tool server, ``http`` to call a remote one
            command: Executable for the stdio tool server
            args: Arguments for the stdio tool server
            url: Endpoint of the remote tool server
            token: Bearer token for the remote tool server
        """
        if transport == "http" and not url:
            raise ValueError("TOOLS_URL environment variable is required for the http tool transport")

        self.transport = transport
        self.command = command
        self.args = args if args is not None else ["-m", "shapesmith.toolserver.stdio"]
        self.url = url
        self.token = token

        self._session: ClientSession | None = None
        self._descriptors: list[ToolDescriptor] = []
        self._ready: asyncio.Future[None] | None = None
        self._runner: asyncio.Task[None] | None = None
        self._closing: asyncio.Event | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ToolBridge":
        """Build a bridge from application settings."""
        return cls(
            transport=settings.tools_transport,
            command=settings.tools_command,
            args=settings.tools_args,
            url=settings.tools_url,
            token=settings.tools_token,
        )

    @property
    def connected(self) -> bool:
        """Whether a tool server session is open."""
        return self._session is not None

    @asynccontextmanager
    async def _open_streams(self) -> AsyncIterator[tuple[Any, Any]]:
        if self.transport == "http":
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            async with streamablehttp_client(self.url, headers=headers) as (read_stream, write_stream, _):
                yield read_stream, write_stream
        else:
            # The tool server needs the CAD credentials from our environment
            params = StdioServerParameters(command=self.command, args=self.args, env=dict(os.environ))
            async with stdio_client(params) as (read_stream, write_stream):
                yield read_stream, write_stream

    async def _run_connection(self, ready: asyncio.Future[None], closing: asyncio.Event) -> None:
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(self._open_streams())
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                await session.initialize()

                result = await session.list_tools()
                self._descriptors = [
                    ToolDescriptor(name=tool.name, description=tool.description or "", input_schema=tool.inputSchema)
                    for tool in result.tools
                ]
                self._session = session
                logger.info(f"Tool bridge connected with tools: {[d.name for d in self._descriptors]}")
                ready.set_result(None)

                await closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.error(f"Tool bridge connection lost: {e}", exc_info=True)
        finally:
            self._session = None

    async def connect(self) -> None:
        """Open the tool server session if it is not open yet."""
        if self._session is not None:
            return

        if self._runner is not None and self._runner.done():
            # The previous connection ended, start over
            self._ready = None
            self._runner = None

        if self._ready is None:
            logger.info(f"Connecting to tool server over {self.transport}")
            self._closing = asyncio.Event()
            self._ready = asyncio.get_running_loop().create_future()
            self._runner = asyncio.create_task(self._run_connection(self._ready, self._closing))

        ready = self._ready
        try:
            await asyncio.shield(ready)
        except Exception:
            # Let the next caller retry from scratch
            if self._ready is ready:
                self._ready = None
                self._runner = None
            raise

    async def list_tools(self) -> list[ToolDescriptor]:
        """Descriptors of the tools the server offers."""
        await self.connect()
        return list(self._descriptors)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolOutput:
        """Invoke a tool on the server.

        Connection failures and tool-side errors come back as an error output
        rather than an exception so they can be reported in the conversation.
        """
        try:
            await self.connect()
            if self._session is None:
                raise ToolInvocationError("Tool server session is not open")
            result = await self._session.call_tool(name, arguments)
        except Exception as e:
            logger.error(f"Tool call {name} failed: {e}", exc_info=True)
            return ToolOutput.from_text(f"Error calling tool {name}: {e}", is_error=True)

        output = ToolOutput(content=normalize_content(result.content), is_error=bool(result.isError))
        if output.is_error:
            logger.warning(f"Tool {name} reported an error: {output.text[:200]}")
        return output

    async def aclose(self) -> None:
        """Close the session and stop the tool server connection."""
        if self._closing is not None:
            self._closing.set()
        if self._runner is not None:
            await self._runner
        self._ready = None
        self._runner = None
        self._closing = None
        self._session = None
