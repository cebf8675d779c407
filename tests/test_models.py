"""Tests for data models."""

import json
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from shapesmith.models.conversation import (
    ChatRequest,
    ChatResponse,
    ChatTurn,
    DoneEvent,
    ErrorEvent,
    HealthResponse,
    TextEvent,
    ToolUseEvent,
    format_sse,
)
from shapesmith.models.llm import LLMMessage, LLMUsage, TextBlock, ToolResultBlock, ToolUseBlock
from shapesmith.models.tools import ImportOutcome, ToolOutput, ToolOutputImage, ToolOutputText
from shapesmith.services.llm import to_tool_result


class TestChatModels:
    """Tests for chat request/response models."""

    def test_chat_request_valid(self):
        request = ChatRequest(message="Make a cube")
        assert request.message == "Make a cube"
        assert request.conversation_history == []

    def test_chat_request_from_json(self):
        data = json.loads(
            '{"message": "Thicker", "conversationHistory": ['
            '{"role": "user", "content": "Make a plate"}, {"role": "assistant", "content": "Done."}]}'
        )
        request = ChatRequest.model_validate(data)

        assert [turn.role for turn in request.conversation_history] == ["user", "assistant"]
        assert request.conversation_history[0].content == "Make a plate"

    def test_chat_request_with_block_history(self):
        request = ChatRequest.model_validate(
            {
                "message": "Again",
                "conversationHistory": [
                    {
                        "role": "assistant",
                        "content": [{"type": "tool_use", "id": "toolu_1", "name": "create_from_openscad", "input": {}}],
                    }
                ],
            }
        )

        assert isinstance(request.conversation_history[0].content[0], ToolUseBlock)

    def test_chat_request_missing_message(self):
        with pytest.raises(ValidationError):
            ChatRequest.model_validate({"conversationHistory": []})

    def test_chat_turn_rejects_unknown_role(self):
        with pytest.raises(ValidationError):
            ChatTurn(role="system", content="You are a CAD assistant")

    def test_chat_response_serializes_aliases(self):
        response = ChatResponse(
            message="Done.",
            tools_used=["toolu_1"],
            conversation_history=[ChatTurn(role="user", content="Make a cube")],
        )

        data = response.model_dump(by_alias=True)
        assert data["toolsUsed"] == ["toolu_1"]
        assert data["conversationHistory"] == [{"role": "user", "content": "Make a cube"}]

    def test_health_response_valid(self):
        now = datetime.now(UTC)
        response = HealthResponse(status="ok", mcp_connected=True, timestamp=now, version="0.1.0")

        assert response.model_dump(by_alias=True)["mcpConnected"] is True
        assert response.timestamp == now


class TestStreamEvents:
    """Tests for server-sent event encoding."""

    def test_format_text_event(self):
        assert format_sse(TextEvent(content="Hi")) == 'data: {"type":"text","content":"Hi"}\n\n'

    def test_format_tool_use_event(self):
        record = format_sse(ToolUseEvent(tool="create_from_openscad", status="calling"))

        assert record.startswith("data: ")
        assert record.endswith("\n\n")
        assert json.loads(record[len("data: ") :]) == {
            "type": "tool_use",
            "tool": "create_from_openscad",
            "status": "calling",
        }

    def test_terminal_events(self):
        assert json.loads(format_sse(DoneEvent())[6:]) == {"type": "done"}
        assert json.loads(format_sse(ErrorEvent(error="boom"))[6:]) == {"type": "error", "error": "boom"}

    def test_tool_use_status_is_restricted(self):
        with pytest.raises(ValidationError):
            ToolUseEvent(tool="create_from_openscad", status="running")


class TestLLMModels:
    """Tests for provider-agnostic message models."""

    def test_text_block_ignores_extra_fields(self):
        block = TextBlock.model_validate({"type": "text", "text": "Hi", "citations": None})
        assert block.model_dump() == {"type": "text", "text": "Hi"}

    def test_message_block_accessors(self):
        message = LLMMessage(
            role="assistant",
            content=[TextBlock(text="Compiling"), ToolUseBlock(id="toolu_1", name="create_from_openscad", input={})],
        )

        assert [b.id for b in message.tool_use_blocks()] == ["toolu_1"]
        assert message.tool_result_blocks() == []
        assert LLMMessage(role="user", content="plain").tool_use_blocks() == []

    def test_tool_result_text(self):
        block = ToolResultBlock(tool_use_id="toolu_1", content=[TextBlock(text="line 1"), TextBlock(text="line 2")])
        assert block.text == "line 1\nline 2"
        assert block.is_error is False

    def test_usage_add(self):
        usage = LLMUsage(input_tokens=10, output_tokens=5, total_tokens=15)
        usage.add(LLMUsage(input_tokens=1, output_tokens=2, total_tokens=3, cache_read_input_tokens=4))

        assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (11, 7, 18)
        assert usage.cache_read_input_tokens == 4


class TestToolModels:
    """Tests for tool outputs and import outcomes."""

    def test_output_from_text(self):
        output = ToolOutput.from_text("Created", is_error=True)

        assert output.content == [ToolOutputText(text="Created")]
        assert output.is_error
        assert output.text == "Created"

    def test_bind_output_to_call(self):
        output = ToolOutput(
            content=[ToolOutputText(text="Preview"), ToolOutputImage(data="aGk=", mime_type="image/png")]
        )

        block = to_tool_result("toolu_1", output)

        assert block.tool_use_id == "toolu_1"
        assert block.content[0] == TextBlock(text="Preview")
        assert block.content[1].source == {"type": "base64", "media_type": "image/png", "data": "aGk="}

    def test_empty_output_is_never_an_empty_result(self):
        block = to_tool_result("toolu_1", ToolOutput())
        assert block.text == "(no output)"

    def test_error_flag_survives_binding(self):
        block = to_tool_result("toolu_1", ToolOutput.from_text("boom", is_error=True))
        assert block.is_error

    def test_import_outcome_success(self):
        outcome = ImportOutcome(
            status="success",
            document_name="Cube",
            document_id="doc123",
            url="https://cad.onshape.com/documents/doc123",
        )

        assert outcome.ok
        assert "Document: Cube" in outcome.render()
        assert "View your model: https://cad.onshape.com/documents/doc123" in outcome.render()

    def test_import_outcome_failure(self):
        outcome = ImportOutcome(status="failure", document_name="Cube", error="403 Forbidden")

        assert not outcome.ok
        assert outcome.render() == "Failed to create 3D model 'Cube' in Onshape: 403 Forbidden"
