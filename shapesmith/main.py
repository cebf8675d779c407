"""Main FastAPI application."""

import asyncio
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shapesmith import __version__
from shapesmith.api.endpoints import router
from shapesmith.clients.anthropic import AnthropicClient
from shapesmith.config import Settings
from shapesmith.services.conversation import ConversationService
from shapesmith.services.geometry import OpenSCADCompiler
from shapesmith.services.llm import LLMService
from shapesmith.services.tool_bridge import ToolBridge
from shapesmith.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)


async def _warm_up(bridge: ToolBridge) -> None:
    try:
        await bridge.connect()
    except Exception as e:
        # The first chat request retries the connection
        logger.warning(f"Tool server not reachable at start-up: {e}")


def create_app(
    settings: Settings | None = None,
    conversation_service: ConversationService | None = None,
    tool_bridge: ToolBridge | None = None,
) -> FastAPI:
    """Build the chat API application.

    Args:
        settings: Application settings (defaults to the environment)
        conversation_service: Pre-built conversation service, mainly for tests
        tool_bridge: Pre-built tool bridge, mainly for tests
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bridge = tool_bridge or ToolBridge.from_settings(settings)
        service = conversation_service or ConversationService(
            llm_service=LLMService(AnthropicClient.from_settings(settings)),
            bridge=bridge,
            compiler=OpenSCADCompiler.from_settings(settings),
            settings=settings,
        )
        app.state.tool_bridge = bridge
        app.state.conversation_service = service

        logger.info("Initializing MCP...")
        warm_up = asyncio.create_task(_warm_up(bridge))
        try:
            yield
        finally:
            warm_up.cancel()
            await bridge.aclose()
            logger.info("Tool bridge closed")

    app = FastAPI(
        title="Shapesmith CAD Assistant",
        description=(
            "A conversational assistant that writes OpenSCAD programs and turns them into Onshape documents."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=[
            {
                "name": "Chat",
                "description": "Chat with the CAD assistant, as a single response or as a server-sent event stream.",
            },
            {
                "name": "Health",
                "description": "Service health monitoring and status checks.",
            },
        ],
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


def main() -> None:
    """Console entry point for the chat API."""
    load_dotenv()
    settings = Settings.from_env()
    setup_logging(LogConfig(level=settings.log_level))
    logger.info(f"Backend API listening on port {settings.port}")
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
