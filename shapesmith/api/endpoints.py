"""API endpoints for the CAD chat service."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from shapesmith import __version__
from shapesmith.errors import FormatViolationError, IterationLimitError, MessageTooLongError, ProtocolError
from shapesmith.models.conversation import ChatRequest, ChatResponse, ErrorResponse, HealthResponse, format_sse
from shapesmith.services.conversation import ConversationService
from shapesmith.services.tool_bridge import ToolBridge
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_conversation_service(request: Request) -> ConversationService:
    """Conversation service created at application start-up."""
    return request.app.state.conversation_service


def get_tool_bridge(request: Request) -> ToolBridge:
    """Tool bridge created at application start-up."""
    return request.app.state.tool_bridge


def error_response(status_code: int, error: str, hint: str | None = None) -> JSONResponse:
    """JSON error body in the shape the chat front end expects."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, hint=hint).model_dump(exclude_none=True),
    )


@router.post(
    "/api/chat",
    response_model=ChatResponse,
    response_model_by_alias=True,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
    tags=["Chat"],
)
async def chat(
    request: ChatRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> ChatResponse | JSONResponse:
    """Handle a chat message and return the complete assistant answer."""
    try:
        return await service.process_message(request)
    except FormatViolationError as e:
        return error_response(400, str(e), e.hint)
    except (MessageTooLongError, ProtocolError) as e:
        logger.warning(f"Rejected chat request: {e}")
        return error_response(400, str(e))
    except IterationLimitError as e:
        logger.warning(str(e))
        return error_response(504, str(e))
    except Exception as e:
        logger.error(f"Chat processing error: {e}", exc_info=True)
        return error_response(500, str(e))


@router.post("/api/chat/stream", tags=["Chat"])
async def chat_stream(
    request: ChatRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> StreamingResponse:
    """Handle a chat message as a server-sent event stream."""

    async def event_source():
        async for event in service.stream_message(request):
            yield format_sse(event)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/health", response_model=HealthResponse, response_model_by_alias=True, tags=["Health"])
async def health_check(bridge: ToolBridge = Depends(get_tool_bridge)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        mcp_connected=bridge.connected,
        timestamp=datetime.now(UTC),
        version=__version__,
    )
