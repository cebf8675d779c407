"""LLM-related data models and types (provider-agnostic)."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from shapesmith.models.tools import ToolOutput


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    type: Literal["text"] = "text"
    text: str

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


class ImageBlock(BaseModel):
    """Image content block (base64 source), used inside tool results."""

    type: Literal["image"] = "image"
    source: dict[str, Any]

    class Config:
        extra = "ignore"


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


ToolResultContent = TextBlock | ImageBlock


class ToolResultBlock(BaseModel):
    """Tool result content block.

    Content is always a list of typed blocks, even when the tool produced a
    single string.
    """

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: list[ToolResultContent] = Field(default_factory=list)
    is_error: bool = False

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def tool_use_blocks(self) -> list[ToolUseBlock]:
        """Tool calls carried by this message."""
        if isinstance(self.content, str):
            return []
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_result_blocks(self) -> list[ToolResultBlock]:
        """Tool results carried by this message."""
        if isinstance(self.content, str):
            return []
        return [block for block in self.content if isinstance(block, ToolResultBlock)]


ToolCallable = Callable[[dict[str, Any]], Awaitable[ToolOutput]]


@dataclass
class LLMTool:
    """Tool with both schema and callable."""

    name: str
    description: str
    input_schema: dict[str, Any]
    callable: ToolCallable


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "LLMUsage") -> None:
        """Fold another usage record into this one."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens


# Streaming events emitted by the model client, in generation order.
@dataclass
class TextDelta:
    """A fragment of assistant text."""

    index: int
    text: str


@dataclass
class ToolUseStart:
    """A tool-use content block has started."""

    index: int
    id: str
    name: str


@dataclass
class ToolInputDelta:
    """A fragment of a tool call's JSON input."""

    index: int
    partial_json: str


@dataclass
class ContentBlockStop:
    """The content block at ``index`` is complete."""

    index: int


@dataclass
class MessageStop:
    """The model turn is complete."""

    stop_reason: str | None
    usage: LLMUsage = field(default_factory=LLMUsage)


ModelStreamEvent = TextDelta | ToolUseStart | ToolInputDelta | ContentBlockStop | MessageStop


@dataclass
class AgentLoopResult:
    """Result from executing an agent loop."""

    content: list[ContentBlock]
    stop_reason: str | None
    messages: list[LLMMessage]
    turns: int
    usage: LLMUsage | None
    text: str = ""
    tools_invoked: list[str] = field(default_factory=list)
    tool_names: list[str] = field(default_factory=list)
