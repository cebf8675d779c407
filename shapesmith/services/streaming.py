"""Assembly of streamed model output into complete content blocks."""

import json
from enum import Enum
from typing import Any

from shapesmith.errors import MalformedToolInputError, ProtocolError
from shapesmith.models.llm import (
    ContentBlock,
    ContentBlockStop,
    LLMUsage,
    MessageStop,
    ModelStreamEvent,
    TextBlock,
    TextDelta,
    ToolInputDelta,
    ToolUseBlock,
    ToolUseStart,
)


class AccumulatorState(Enum):
    """Lifecycle of a streamed tool input."""

    IDLE = "idle"
    ACCUMULATING = "accumulating"
    PARSED = "parsed"
    PARSE_FAILED = "parse_failed"


class ToolInputAccumulator:
    """Collects JSON fragments of one tool call and parses them once, at block end.

    Fragments are never parsed individually; ``finish`` is the only place the
    concatenated input is decoded.
    """

    def __init__(self, tool_use_id: str, name: str):
        self.tool_use_id = tool_use_id
        self.name = name
        self.state = AccumulatorState.IDLE
        self._fragments: list[str] = []
        self.value: dict[str, Any] | None = None

    def feed(self, fragment: str) -> None:
        """Append a fragment of the JSON input."""
        if self.state not in (AccumulatorState.IDLE, AccumulatorState.ACCUMULATING):
            raise ProtocolError(f"Tool input for {self.tool_use_id} received after the block ended")
        self.state = AccumulatorState.ACCUMULATING
        self._fragments.append(fragment)

    @property
    def raw(self) -> str:
        """Concatenated input received so far."""
        return "".join(self._fragments)

    def finish(self) -> dict[str, Any]:
        """Parse the accumulated input.

        A tool call with no input fragments has empty input.

        Raises:
            MalformedToolInputError: If the input is not a JSON object
        """
        raw = self.raw.strip()
        try:
            value = json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            self.state = AccumulatorState.PARSE_FAILED
            raise MalformedToolInputError(f"Tool input for {self.name} is not valid JSON: {e}") from e

        if not isinstance(value, dict):
            self.state = AccumulatorState.PARSE_FAILED
            raise MalformedToolInputError(f"Tool input for {self.name} must be a JSON object")

        self.state = AccumulatorState.PARSED
        self.value = value
        return value

    def to_block(self) -> ToolUseBlock:
        """The completed tool call."""
        if self.state is not AccumulatorState.PARSED or self.value is None:
            raise ProtocolError(f"Tool input for {self.tool_use_id} has not been parsed")
        return ToolUseBlock(id=self.tool_use_id, name=self.name, input=self.value)


class TurnAssembler:
    """Folds one model turn's stream events into ordered content blocks."""

    def __init__(self):
        self._text: dict[int, list[str]] = {}
        self._tools: dict[int, ToolInputAccumulator] = {}
        self._blocks: dict[int, ContentBlock] = {}
        self.stop_reason: str | None = None
        self.usage = LLMUsage()

    def apply(self, event: ModelStreamEvent) -> None:
        """Consume one stream event."""
        if isinstance(event, TextDelta):
            self._text.setdefault(event.index, []).append(event.text)

        elif isinstance(event, ToolUseStart):
            self._tools[event.index] = ToolInputAccumulator(event.id, event.name)

        elif isinstance(event, ToolInputDelta):
            accumulator = self._tools.get(event.index)
            if accumulator is None:
                raise ProtocolError(f"Tool input fragment for unknown content block {event.index}")
            accumulator.feed(event.partial_json)

        elif isinstance(event, ContentBlockStop):
            if event.index in self._tools:
                self._tools[event.index].finish()
                self._blocks[event.index] = self._tools[event.index].to_block()
            elif event.index in self._text:
                self._blocks[event.index] = TextBlock(text="".join(self._text[event.index]))

        elif isinstance(event, MessageStop):
            self.stop_reason = event.stop_reason
            self.usage = event.usage

    @property
    def content(self) -> list[ContentBlock]:
        """Completed blocks in stream order.

        Text blocks that never received a stop signal are still included; tool
        calls are only included once their input was parsed.
        """
        blocks = dict(self._blocks)
        for index, parts in self._text.items():
            blocks.setdefault(index, TextBlock(text="".join(parts)))
        return [blocks[index] for index in sorted(blocks) if not self._is_empty_text(blocks[index])]

    @property
    def text(self) -> str:
        """All text produced in this turn."""
        return "".join("".join(parts) for _, parts in sorted(self._text.items()))

    @property
    def tool_calls(self) -> list[ToolUseBlock]:
        """Parsed tool calls in stream order."""
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    @property
    def pending_tool_calls(self) -> list[ToolInputAccumulator]:
        """Tool calls whose block never ended."""
        return [acc for acc in self._tools.values() if acc.state is not AccumulatorState.PARSED]

    @staticmethod
    def _is_empty_text(block: ContentBlock) -> bool:
        return isinstance(block, TextBlock) and not block.text
