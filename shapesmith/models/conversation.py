"""Chat API request, response and stream event models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from shapesmith.models.llm import ContentBlock


class ChatTurn(BaseModel):
    """One turn of caller-supplied conversation history."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class ChatRequest(BaseModel):
    """Request model for the chat endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    conversation_history: list[ChatTurn] = Field(default_factory=list, alias="conversationHistory")


class ChatResponse(BaseModel):
    """Response model for the non-streaming chat endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    tools_used: list[str] = Field(default_factory=list, alias="toolsUsed")
    conversation_history: list[ChatTurn] = Field(default_factory=list, alias="conversationHistory")


class ErrorResponse(BaseModel):
    """Error body returned by the chat endpoints."""

    error: str
    hint: str | None = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    mcp_connected: bool = Field(alias="mcpConnected")
    timestamp: datetime
    version: str


# Stream events sent to the caller as server-sent events
class TextEvent(BaseModel):
    """Incremental assistant text."""

    type: Literal["text"] = "text"
    content: str


class ToolUseEvent(BaseModel):
    """Tool call progress."""

    type: Literal["tool_use"] = "tool_use"
    tool: str
    status: Literal["calling", "completed"]


class DoneEvent(BaseModel):
    """Terminal success event."""

    type: Literal["done"] = "done"


class ErrorEvent(BaseModel):
    """Terminal failure event."""

    type: Literal["error"] = "error"
    error: str


StreamEvent = TextEvent | ToolUseEvent | DoneEvent | ErrorEvent


def format_sse(event: StreamEvent) -> str:
    """Encode an event as one ``data:`` record of a text/event-stream."""
    return f"data: {event.model_dump_json()}\n\n"
