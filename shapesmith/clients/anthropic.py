"""Anthropic API client with rate limiting, streaming and error handling."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import tiktoken
from anthropic import APIError, AsyncAnthropic, AsyncAnthropicBedrock
from anthropic.types import ContentBlock as AnthropicContentBlock
from anthropic.types import Message
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from shapesmith.config import Settings
from shapesmith.errors import MessageTooLongError
from shapesmith.models.llm import (
    ContentBlock,
    ContentBlockStop,
    LLMMessage,
    LLMUsage,
    MessageStop,
    ModelStreamEvent,
    TextBlock,
    TextDelta,
    ToolInputDelta,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseStart,
)
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicResponse:
    """Structured response from Anthropic API."""

    content: list[ContentBlock]
    stop_reason: str | None
    usage: LLMUsage
    model: str


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = "claude-sonnet-4-5"
    max_tokens: int = 8192
    temperature: float = 0.1
    max_retries: int = 3
    retry_delay: float = 1.0

    # Token limits for validation and truncation
    max_message_tokens: int = 2000  # Maximum tokens per individual message
    max_conversation_tokens: int = 200000
    token_headroom: int = 8192  # Reserve tokens for response


class AnthropicRateLimiter:
    """Moving-window rate limiter for requests and tokens."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within rate limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0, window_stats.reset_time - asyncio.get_running_loop().time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class AnthropicClient:
    """Low-level Anthropic API client with rate limiting and error handling.

    Talks to the Anthropic API directly, or to the same Messages API hosted on
    AWS Bedrock when ``provider`` is ``"bedrock"``.
    """

    tokenizer: tiktoken.Encoding | None = None
    client: AsyncAnthropic | AsyncAnthropicBedrock
    config: AnthropicConfig
    rate_limiter: AnthropicRateLimiter = AnthropicRateLimiter()

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        provider: Literal["anthropic", "bedrock"] = "anthropic",
        aws_region: str = "us-east-2",
        client: AsyncAnthropic | AsyncAnthropicBedrock | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (required for the anthropic provider)
            config: Client configuration
            provider: ``anthropic`` or ``bedrock``
            aws_region: Bedrock region
            client: Pre-built SDK client, mainly for tests
        """
        self.config = config or AnthropicConfig()

        if client is not None:
            self.client = client
        elif provider == "bedrock":
            self.client = AsyncAnthropicBedrock(aws_region=aws_region)
        else:
            if not api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            self.client = AsyncAnthropic(api_key=api_key)

        # Initialize tokenizer for token estimation
        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnthropicClient":
        """Build a client from application settings."""
        return cls(
            api_key=settings.anthropic_api_key,
            config=AnthropicConfig(model=settings.model_id),
            provider=settings.model_provider,
            aws_region=settings.aws_region,
        )

    def _build_request(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[AnthropicTool] | None,
        **kwargs,
    ) -> dict[str, Any]:
        truncated_messages = self.truncate_conversation(messages, system_prompt, tools)

        request_params: dict[str, Any] = {
            "model": kwargs.get("model", self.config.model),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "system": system_prompt,
            "messages": [msg.model_dump(exclude_none=True) for msg in truncated_messages],
        }
        if tools:
            request_params["tools"] = [tool.model_dump(exclude_none=True) for tool in tools]

        logger.debug(
            f"Prepared request with {len(truncated_messages)} messages, {len(tools) if tools else 0} tools, "
            f"model: {request_params['model']}"
        )
        return request_params

    async def create_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[AnthropicTool] | None = None,
        **kwargs,
    ) -> AnthropicResponse:
        """Create a message with Claude API.

        Args:
            messages: Conversation history
            system_prompt: System prompt for Claude
            tools: Available tools for Claude
            **kwargs: Additional parameters for Claude API

        Returns:
            Structured Anthropic response
        """
        request_params = self._build_request(messages, system_prompt, tools, **kwargs)

        estimated_tokens = self._estimate_tokens(messages, system_prompt)
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        response: Message = await self._request_with_retries(lambda: self.client.messages.create(**request_params))

        usage = LLMUsage()
        if response.usage:
            usage = LLMUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
                cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            )

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )

        return AnthropicResponse(
            content=self._convert_content_blocks(response.content),
            stop_reason=response.stop_reason,
            usage=usage,
            model=response.model,
        )

    async def stream_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[AnthropicTool] | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelStreamEvent]:
        """Stream a message from Claude API as provider-agnostic events.

        Events are yielded in generation order. Tool input arrives as raw JSON
        fragments; assembling and parsing them is left to the caller.
        Streams are not retried: part of the output may already have been
        forwarded to the user.
        """
        request_params = self._build_request(messages, system_prompt, tools, **kwargs)

        estimated_tokens = self._estimate_tokens(messages, system_prompt)
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        stream = await self.client.messages.create(**request_params, stream=True)

        usage = LLMUsage()
        stop_reason: str | None = None
        async for event in stream:
            if event.type == "message_start":
                message_usage = event.message.usage
                usage.input_tokens = message_usage.input_tokens
                usage.cache_creation_input_tokens = message_usage.cache_creation_input_tokens or 0
                usage.cache_read_input_tokens = message_usage.cache_read_input_tokens or 0

            elif event.type == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    yield ToolUseStart(index=event.index, id=block.id, name=block.name)
                elif block.type == "text" and block.text:
                    yield TextDelta(index=event.index, text=block.text)

            elif event.type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    yield TextDelta(index=event.index, text=delta.text)
                elif delta.type == "input_json_delta":
                    yield ToolInputDelta(index=event.index, partial_json=delta.partial_json)

            elif event.type == "content_block_stop":
                yield ContentBlockStop(index=event.index)

            elif event.type == "message_delta":
                stop_reason = event.delta.stop_reason
                if event.usage:
                    usage.output_tokens = event.usage.output_tokens

            elif event.type == "message_stop":
                break

        usage.total_tokens = usage.input_tokens + usage.output_tokens
        logger.debug(f"Stream finished - Stop reason: {stop_reason}")
        yield MessageStop(stop_reason=stop_reason, usage=usage)

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                if status_code == 429:  # Rate limit exceeded
                    retry_after = 60
                    response = getattr(e, "response", None)
                    if response is not None and hasattr(response, "headers"):
                        retry_after = int(response.headers.get("retry-after", 60))

                    if retry_after < 120 and attempt < self.config.max_retries - 1:
                        await asyncio.sleep(retry_after)
                        continue

                elif status_code is not None and status_code >= 500 and attempt < self.config.max_retries - 1:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                # Re-raise if not retryable or max retries reached
                raise

        raise RuntimeError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _convert_content_blocks(self, anthropic_content: list[AnthropicContentBlock]) -> list[ContentBlock]:
        """Convert Anthropic content blocks to our ContentBlock types."""
        converted_blocks: list[ContentBlock] = []
        for block in anthropic_content:
            block_dict = block.model_dump() if hasattr(block, "model_dump") else dict(block)

            if block_dict.get("type") == "text":
                converted_blocks.append(TextBlock.model_validate(block_dict))
            elif block_dict.get("type") == "tool_use":
                converted_blocks.append(ToolUseBlock.model_validate(block_dict))
            else:
                logger.warning(f"Unknown content block type: {block_dict.get('type')}")

        return converted_blocks

    def _message_text(self, message: LLMMessage) -> str:
        if isinstance(message.content, str):
            return message.content

        parts: list[str] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                parts.append(str(block.input))
            elif isinstance(block, ToolResultBlock):
                parts.append(block.text)
        return "".join(parts)

    def _estimate_tokens(self, messages: list[LLMMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting."""
        text_content = system_prompt + "".join(self._message_text(message) for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message.

        Args:
            message: Message content

        Returns:
            Estimated token count
        """
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def validate_message_tokens(self, message: str) -> None:
        """Validate that a message doesn't exceed token limits.

        Args:
            message: Message content

        Raises:
            MessageTooLongError: If message exceeds token limit
        """
        token_count = self.estimate_message_tokens(message)
        if token_count > self.config.max_message_tokens:
            raise MessageTooLongError(
                f"Message exceeds token limit: {token_count} tokens > {self.config.max_message_tokens} limit"
            )

    def truncate_conversation(
        self, messages: list[LLMMessage], system_prompt: str, tools: list[AnthropicTool] | None = None
    ) -> list[LLMMessage]:
        """Truncate conversation from the beginning to fit within token limits.

        The kept window always starts at a user turn that is not a tool result,
        so a tool result is never separated from the call that produced it.

        Args:
            messages: Conversation messages
            system_prompt: System prompt
            tools: Available tools

        Returns:
            Truncated message list that fits within limits
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)

        if tools:
            tool_content = "".join(tool.name + tool.description + str(tool.input_schema) for tool in tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        start = len(messages)
        current_tokens = 0
        for index in range(len(messages) - 1, -1, -1):
            message_tokens = self.estimate_message_tokens(self._message_text(messages[index]))
            if current_tokens + message_tokens > available_tokens:
                break
            current_tokens += message_tokens
            start = index

        # Never cut between a tool call and its result, never open with an assistant turn
        while start < len(messages) and (
            messages[start].role != "user" or messages[start].tool_result_blocks()
        ):
            start += 1

        if start >= len(messages):
            # Always keep the latest message, even on its own
            start = len(messages) - 1

        truncated_messages = messages[start:]
        if len(truncated_messages) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated_messages)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated_messages
