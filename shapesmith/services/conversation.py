"""Chat service: history, output validation and OpenSCAD post-processing."""

import re
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from shapesmith.config import Settings
from shapesmith.errors import CompileError, FormatViolationError, ProtocolError
from shapesmith.models.conversation import (
    ChatRequest,
    ChatResponse,
    ChatTurn,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TextEvent,
    ToolUseEvent,
)
from shapesmith.models.llm import AgentLoopResult, LLMMessage, LLMTool, TextBlock
from shapesmith.services.geometry import OpenSCADCompiler, extract_openscad_code
from shapesmith.services.llm import LLMService
from shapesmith.services.tool_bridge import ToolBridge
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

ARTIFACT_TOOL = "create_from_openscad"
IMPORT_TOOL = "import_stl"

SYSTEM_PROMPT = """You are a 3D CAD assistant that helps users create 3D models in Onshape using OpenSCAD code.

You MUST NOT generate raw STL data (lines with "facet normal", "vertex", "outer loop", etc.).
You MUST write OpenSCAD code in a markdown code block with the "openscad" language tag:

```openscad
// Your OpenSCAD code here
cylinder(r=10, h=20, $fn=32);
```

=== OPENSCAD BASICS ===

PRIMITIVES:
  cylinder(r=radius, h=height, center=false, $fn=32);  // $fn = number of facets (16-32 is good)
  cube([width, depth, height], center=false);           // [x, y, z] dimensions
  sphere(r=radius, $fn=32);                             // Use center=true to center at origin

TRANSFORMATIONS:
  translate([x, y, z]) object;
  rotate([x_deg, y_deg, z_deg]) object;
  scale([x_scale, y_scale, z_scale]) object;

BOOLEAN OPERATIONS:
  difference() { base_shape; shape_to_subtract; }
  union() { shape1; shape2; }
  intersection() { shape1; shape2; }

MODULES AND LOOPS:
  module gear(teeth=8, radius=20) { ... }
  for (i = [0:7]) rotate([0, 0, i * 45]) cube([3, 8, 6]);

=== YOUR WORKFLOW ===

When the user requests a 3D object:
1. Decompose it into primitives, using modules for complex shapes and difference() for holes
2. Use $fn=16 to 32 for cylinders and spheres
3. FIRST, show the OpenSCAD code to the user in an ```openscad block so they can learn from it
4. THEN, if the "create_from_openscad" tool is available, call it with the exact same code
   (no markdown formatting) and a descriptive document_name
5. After the tool returns, give a short summary that includes the link from the tool result

If no tool is available, just write the OpenSCAD code and explain what you created; the
system will convert it to STL and import it into Onshape for you."""

FORMAT_VIOLATION_HINT = "Claude must output code in ```openscad blocks, not raw STL coordinates."

STL_SOLID_PATTERN = re.compile(r"^\s*solid\b[\s\S]*?^\s*endsolid\b", re.MULTILINE)
QUOTED_NAME_PATTERN = re.compile(r"(?:import|upload|create|name|call).*?[\"']([^\"']+)[\"']", re.IGNORECASE)
NAMED_PATTERN = re.compile(r"\b(?:as|named)\s+[\"']?([^\"'\n]+)[\"']?", re.IGNORECASE)


def contains_raw_stl(text: str) -> bool:
    """Whether ``text`` carries ASCII STL geometry instead of a program."""
    if "facet normal" in text:
        return True
    if "vertex " in text and "endfacet" in text:
        return True
    return bool(STL_SOLID_PATTERN.search(text))


def extract_document_name(message: str, today: datetime | None = None) -> str:
    """Derive a document name from the user's request.

    A quoted name after create/name/call/import/upload wins, then whatever
    follows "as" or "named"; otherwise a dated default.
    """
    match = QUOTED_NAME_PATTERN.search(message) or NAMED_PATTERN.search(message)
    if match and match.group(1).strip():
        return match.group(1).strip()

    today = today or datetime.now(UTC)
    return f"3D Model - {today.date().isoformat()}"


def validate_tool_pairing(messages: list[LLMMessage]) -> None:
    """Check that every tool result answers a call from the turn right before it.

    Raises:
        ProtocolError: If a tool result has no matching pending call
    """
    for index, message in enumerate(messages):
        results = message.tool_result_blocks()
        if not results:
            continue

        previous = messages[index - 1] if index > 0 else None
        if message.role != "user" or previous is None or previous.role != "assistant":
            raise ProtocolError("Tool results must directly follow an assistant turn with tool calls")

        pending = {block.id for block in previous.tool_use_blocks()}
        for result in results:
            if result.tool_use_id not in pending:
                raise ProtocolError(f"Tool result {result.tool_use_id} has no matching tool call")


class ConversationService:
    """Service for handling conversational CAD requests.

    Runs the agent loop over the bridged tools, rejects raw-mesh answers and
    turns any OpenSCAD program left in the final answer into an Onshape
    document.
    """

    def __init__(self, llm_service: LLMService, bridge: ToolBridge, compiler: OpenSCADCompiler, settings: Settings):
        """Initialize conversation service.

        Args:
            llm_service: Agent loop runner
            bridge: Connection to the tool server
            compiler: OpenSCAD compiler used for post-processing
            settings: Application settings
        """
        self.llm_service = llm_service
        self.bridge = bridge
        self.compiler = compiler
        self.settings = settings

    async def tool_menu(self) -> dict[str, LLMTool]:
        """Tools offered to the model; blocked tools are left out."""
        descriptors = await self.bridge.list_tools()
        tools: dict[str, LLMTool] = {}
        for descriptor in descriptors:
            if descriptor.name in self.settings.blocked_tools:
                continue

            async def call(arguments: dict, name: str = descriptor.name):
                return await self.bridge.call_tool(name, arguments)

            tools[descriptor.name] = LLMTool(
                name=descriptor.name,
                description=descriptor.description,
                input_schema=descriptor.input_schema,
                callable=call,
            )
        return tools

    def build_messages(self, request: ChatRequest) -> list[LLMMessage]:
        """Conversation for the model: caller history plus the new message.

        Raises:
            ProtocolError: If the history breaks tool call/result pairing
        """
        messages = [
            LLMMessage(
                role=turn.role,
                content=[TextBlock(text=turn.content)] if isinstance(turn.content, str) else turn.content,
            )
            for turn in request.conversation_history
        ]
        messages.append(LLMMessage(role="user", content=[TextBlock(text=request.message)]))
        validate_tool_pairing(messages)
        return messages

    def validate_message(self, message: str) -> None:
        """Reject messages over the per-message token limit.

        Raises:
            MessageTooLongError: If message exceeds token limit
        """
        self.llm_service.client.validate_message_tokens(message)

    def check_output_format(self, text: str) -> None:
        """Reject final answers that contain raw STL.

        Raises:
            FormatViolationError: If STL geometry is found in ``text``
        """
        if contains_raw_stl(text):
            logger.error("Model generated raw STL instead of OpenSCAD, rejecting")
            raise FormatViolationError(
                "Raw STL generation detected. Please generate OpenSCAD code instead.",
                hint=FORMAT_VIOLATION_HINT,
            )

    def _artifact_created(self, result: AgentLoopResult, history_length: int) -> bool:
        """Whether the loop itself already created a document through the artifact tool."""
        new_messages = result.messages[history_length:]
        artifact_calls = {
            block.id for message in new_messages for block in message.tool_use_blocks() if block.name == ARTIFACT_TOOL
        }
        return any(
            block.tool_use_id in artifact_calls and not block.is_error
            for message in new_messages
            for block in message.tool_result_blocks()
        )

    async def _post_process(
        self, text: str, user_message: str, result: AgentLoopResult, history_length: int
    ) -> AsyncIterator[StreamEvent]:
        """Compile and import a program left in the final answer, yielding progress and the annotation."""
        program = extract_openscad_code(text)
        if program is None:
            return

        if self._artifact_created(result, history_length):
            logger.info("Document already created during the conversation, skipping post-processing")
            return

        logger.info("Found OpenSCAD code, converting to STL")
        try:
            mesh = await self.compiler.compile(program)
        except CompileError as e:
            logger.warning(f"Post-processing compile failed: {e}")
            yield TextEvent(content=f"\n\n❌ Error: {e}")
            return

        document_name = extract_document_name(user_message)
        logger.info(f'Importing STL to Onshape as "{document_name}"')

        yield ToolUseEvent(tool=IMPORT_TOOL, status="calling")
        output = await self.bridge.call_tool(IMPORT_TOOL, {"stl": mesh, "document_name": document_name})
        yield ToolUseEvent(tool=IMPORT_TOOL, status="completed")

        if output.is_error:
            yield TextEvent(content=f"\n\n❌ Error: {output.text}")
        else:
            confirmation = f'\n\n✅ STL generated and imported to Onshape as "{document_name}"!'
            yield TextEvent(content=f"{confirmation}\n\n{output.text}")

    async def _run(self, request: ChatRequest, stream: bool) -> AsyncIterator[StreamEvent | AgentLoopResult]:
        self.validate_message(request.message)
        messages = self.build_messages(request)
        tools = await self.tool_menu()

        result: AgentLoopResult | None = None
        async for event in self.llm_service.stream_agent_loop(
            messages, SYSTEM_PROMPT, tools, max_turns=self.settings.max_turns, stream=stream
        ):
            if isinstance(event, AgentLoopResult):
                result = event
            else:
                yield event

        if result is None:
            raise ProtocolError("Agent loop ended without a result")

        self.check_output_format(result.text)

        async for event in self._post_process(result.text, request.message, result, len(messages)):
            if isinstance(event, TextEvent):
                result.text += event.content
            yield event

        yield result

    async def process_message(self, request: ChatRequest) -> ChatResponse:
        """Handle one chat request and return the complete answer.

        Raises:
            MessageTooLongError: If the message exceeds the token limit
            ProtocolError: If the caller history is malformed
            FormatViolationError: If the model answered with raw STL
            IterationLimitError: If the agent loop hit its ceiling
        """
        logger.info(f"Processing message: {request.message[:50]}...")

        result: AgentLoopResult | None = None
        async for event in self._run(request, stream=False):
            if isinstance(event, AgentLoopResult):
                result = event

        if result is None:
            raise ProtocolError("Agent loop ended without a result")
        message = result.text or "No response generated"

        return ChatResponse(
            message=message,
            tools_used=result.tools_invoked,
            conversation_history=[
                *request.conversation_history,
                ChatTurn(role="user", content=request.message),
                ChatTurn(role="assistant", content=message),
            ],
        )

    async def stream_message(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Handle one chat request as a stream of events.

        The stream always ends with exactly one ``done`` or ``error`` event.
        """
        logger.info(f"Streaming message: {request.message[:50]}...")
        try:
            async for event in self._run(request, stream=True):
                if not isinstance(event, AgentLoopResult):
                    yield event
        except Exception as e:
            logger.error(f"Chat stream failed: {e}", exc_info=True)
            yield ErrorEvent(error=str(e))
            return

        yield DoneEvent()
