"""Registry of the tools served by the tool server."""

from typing import Any

from pydantic import ValidationError

from shapesmith.clients.onshape import OnshapeClient
from shapesmith.errors import UnknownToolError
from shapesmith.models.tools import ToolDescriptor, ToolOutput
from shapesmith.services.geometry import OpenSCADCompiler
from shapesmith.tools.base import ToolDefinition
from shapesmith.tools.create_from_openscad import create_create_from_openscad_tool
from shapesmith.tools.import_stl import create_import_stl_tool
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry for managing the tools exposed over MCP."""

    def __init__(self, compiler: OpenSCADCompiler, onshape: OnshapeClient):
        """Initialize tools registry with service dependencies."""
        self.compiler = compiler
        self.onshape = onshape
        self._tools: dict[str, ToolDefinition] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        """Register the default set of CAD tools."""
        tools = [
            create_create_from_openscad_tool(self.compiler, self.onshape),
            create_import_stl_tool(self.onshape),
        ]

        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        self._tools[tool.name] = tool

    def descriptors(self) -> list[ToolDescriptor]:
        """Descriptors of all registered tools, in registration order."""
        return [tool.descriptor() for tool in self._tools.values()]

    async def call(self, name: str, arguments: dict[str, Any]) -> ToolOutput:
        """Validate arguments and run a tool.

        Invalid arguments come back as an error output rather than an
        exception so the model can correct its call.

        Raises:
            UnknownToolError: If no tool with that name is registered
        """
        if not self.has_tool(name):
            raise UnknownToolError(name)
        tool = self._tools[name]

        try:
            params = tool.parse_input(arguments)
        except ValidationError as e:
            logger.warning(f"Invalid arguments for tool {name}: {e}")
            return ToolOutput.from_text(f"Invalid arguments for {name}: {e}", is_error=True)

        logger.info(f"Running tool {name}")
        return await tool.handler(params)

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools
