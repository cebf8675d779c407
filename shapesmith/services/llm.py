"""LLM service for high-level AI operations like agent loops."""

from collections.abc import AsyncIterator

from shapesmith.clients.anthropic import AnthropicClient, AnthropicTool, CacheControl
from shapesmith.errors import IterationLimitError, MalformedToolInputError, ProtocolError, UnknownToolError
from shapesmith.models.conversation import TextEvent, ToolUseEvent
from shapesmith.models.llm import (
    AgentLoopResult,
    ContentBlock,
    ImageBlock,
    LLMMessage,
    LLMTool,
    LLMUsage,
    TextBlock,
    TextDelta,
    ToolResultBlock,
    ToolResultContent,
    ToolUseBlock,
)
from shapesmith.models.tools import ToolOutput, ToolOutputImage, ToolOutputText
from shapesmith.services.streaming import TurnAssembler
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

LoopEvent = TextEvent | ToolUseEvent | AgentLoopResult


def to_tool_result(tool_use_id: str, output: ToolOutput) -> ToolResultBlock:
    """Bind a tool output to the call that produced it."""
    content: list[ToolResultContent] = []
    for item in output.content:
        if isinstance(item, ToolOutputText):
            content.append(TextBlock(text=item.text))
        elif isinstance(item, ToolOutputImage):
            content.append(
                ImageBlock(source={"type": "base64", "media_type": item.mime_type, "data": item.data})
            )
    if not content:
        content.append(TextBlock(text="(no output)"))
    return ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=output.is_error)


class LLMService:
    """High-level LLM service for agent operations and conversation management."""

    def __init__(self, client: AnthropicClient):
        """Initialize LLM service.

        Args:
            client: Anthropic client
        """
        self.client = client

    def _build_tools(self, tools: dict[str, LLMTool]) -> list[AnthropicTool]:
        tool_list = list(tools.values())
        anthropic_tools = []

        for i, tool in enumerate(tool_list):
            # Cache control on the last tool caches all tool definitions
            cache_control = CacheControl(type="ephemeral", ttl="5m") if i == len(tool_list) - 1 else None
            anthropic_tools.append(
                AnthropicTool(
                    name=tool.name,
                    description=tool.description,
                    input_schema=tool.input_schema,
                    cache_control=cache_control,
                )
            )

        return anthropic_tools

    async def _run_tool_calls(
        self,
        tool_use_blocks: list[ToolUseBlock],
        tools: dict[str, LLMTool],
        seen_ids: set[str],
        results: list[ContentBlock],
    ) -> AsyncIterator[ToolUseEvent]:
        """Execute tool calls one after another, appending their results to ``results``."""
        for tool_block in tool_use_blocks:
            if tool_block.id in seen_ids:
                raise ProtocolError(f"Duplicate tool call id: {tool_block.id}")
            seen_ids.add(tool_block.id)

            tool = tools.get(tool_block.name)
            if tool is None:
                logger.error(f"Unknown tool requested: {tool_block.name}")
                raise UnknownToolError(tool_block.name)

            yield ToolUseEvent(tool=tool_block.name, status="calling")
            logger.debug(f"Executing tool: {tool_block.name} with input keys: {list(tool_block.input)}")

            try:
                output = await tool.callable(tool_block.input)
            except Exception as e:
                logger.error(f"Tool {tool_block.name} failed: {e}", exc_info=True)
                output = ToolOutput.from_text(f"Error: {e!s}", is_error=True)
            else:
                logger.debug(f"Tool {tool_block.name} returned: {output.text[:100]}...")

            results.append(to_tool_result(tool_block.id, output))
            yield ToolUseEvent(tool=tool_block.name, status="completed")

    async def stream_agent_loop(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: dict[str, LLMTool],
        max_turns: int = 10,
        stream: bool = True,
        **kwargs,
    ) -> AsyncIterator[LoopEvent]:
        """Run the agent loop, yielding progress as it happens.

        Yields text deltas and tool progress in generation order. The last
        item is always the ``AgentLoopResult``.

        Args:
            messages: Initial conversation messages
            system_prompt: System prompt for Claude
            tools: Dictionary of available tools with schemas and callables
            max_turns: Maximum number of model calls
            stream: Stream model output instead of waiting for whole turns
            **kwargs: Additional parameters for Claude API

        Raises:
            UnknownToolError: If the model requests a tool outside ``tools``
            MalformedToolInputError: If streamed tool input is not a JSON object
            ProtocolError: If a tool call id repeats within the run
            IterationLimitError: If the model still wants tools after ``max_turns`` calls
        """
        logger.info(
            f"Starting agent loop with {len(messages)} initial messages, {len(tools)} tools, max_turns: {max_turns}"
        )
        current_messages = messages.copy()
        anthropic_tools = self._build_tools(tools) or None
        turns = 0
        usage = LLMUsage()
        text_parts: list[str] = []
        tools_invoked: list[str] = []
        tool_names: list[str] = []
        seen_ids: set[str] = set()

        while True:
            turns += 1
            logger.debug(f"Agent loop turn {turns}/{max_turns}")

            if stream:
                assembler = TurnAssembler()
                async for event in self.client.stream_message(
                    messages=current_messages, system_prompt=system_prompt, tools=anthropic_tools, **kwargs
                ):
                    assembler.apply(event)
                    if isinstance(event, TextDelta) and event.text:
                        yield TextEvent(content=event.text)
                if assembler.pending_tool_calls:
                    raise MalformedToolInputError("Tool input ended before its content block was closed")
                content = assembler.content
                stop_reason = assembler.stop_reason
                turn_text = assembler.text
                tool_use_blocks = assembler.tool_calls
                usage.add(assembler.usage)
            else:
                response = await self.client.create_message(
                    messages=current_messages, system_prompt=system_prompt, tools=anthropic_tools, **kwargs
                )
                content = response.content
                stop_reason = response.stop_reason
                turn_text = "".join(block.text for block in content if isinstance(block, TextBlock))
                tool_use_blocks = [block for block in content if isinstance(block, ToolUseBlock)]
                usage.add(response.usage)
                if turn_text:
                    yield TextEvent(content=turn_text)

            if turn_text:
                text_parts.append(turn_text)

            logger.debug(f"LLM response - Stop reason: {stop_reason}")

            if stop_reason != "tool_use" or not tool_use_blocks:
                logger.info(f"Agent loop completed successfully in {turns} turns")
                yield AgentLoopResult(
                    content=content,
                    stop_reason=stop_reason,
                    messages=current_messages,
                    turns=turns,
                    usage=usage,
                    text="\n\n".join(text_parts),
                    tools_invoked=tools_invoked,
                    tool_names=tool_names,
                )
                return

            if turns >= max_turns:
                logger.warning(f"Agent loop reached max turns ({max_turns}) with tool calls pending")
                raise IterationLimitError(max_turns)

            logger.info(f"LLM wants to use {len(tool_use_blocks)} tools")
            current_messages.append(LLMMessage(role="assistant", content=content))

            tool_results: list[ContentBlock] = []
            async for tool_event in self._run_tool_calls(tool_use_blocks, tools, seen_ids, tool_results):
                yield tool_event

            tools_invoked.extend(block.id for block in tool_use_blocks)
            tool_names.extend(block.name for block in tool_use_blocks)
            current_messages.append(LLMMessage(role="user", content=tool_results))

    async def execute_agent_loop(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: dict[str, LLMTool],
        max_turns: int = 10,
        **kwargs,
    ) -> AgentLoopResult:
        """Execute an agent loop with tool calling until completion.

        Uses whole-message model calls (with retries) rather than streaming.

        Returns:
            Structured result with conversation history and metadata
        """
        result: AgentLoopResult | None = None
        async for event in self.stream_agent_loop(messages, system_prompt, tools, max_turns, stream=False, **kwargs):
            if isinstance(event, AgentLoopResult):
                result = event

        if result is None:
            raise ProtocolError("Agent loop ended without a result")

        if result.usage and result.usage.total_tokens:
            logger.info(
                f"Token usage - Input: {result.usage.input_tokens}, Output: {result.usage.output_tokens}, "
                f"Cache hits: {result.usage.cache_read_input_tokens}"
            )
        return result
