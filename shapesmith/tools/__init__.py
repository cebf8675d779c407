"""Tools served to the conversational AI assistant."""

from shapesmith.tools.registry import ToolsRegistry

__all__ = ["ToolsRegistry"]
