"""Protected, stateless MCP endpoint over streamable HTTP.

Every authenticated POST gets a fresh MCP server and a fresh transport; both
are torn down when the request finishes, so concurrent callers never share
request ids or session state.
"""

from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

import anyio
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from shapesmith.auth.tokens import CognitoTokenVerifier, TokenClaims, extract_bearer_token
from shapesmith.clients.onshape import OnshapeClient
from shapesmith.config import Settings
from shapesmith.errors import AuthError
from shapesmith.services.geometry import OpenSCADCompiler
from shapesmith.toolserver.server import build_tool_server
from shapesmith.tools.registry import ToolsRegistry
from shapesmith.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)

SERVICE_NAME = "onshape-mcp"


def jsonrpc_error(code: int, message: str) -> dict[str, Any]:
    """JSON-RPC error envelope with a null id."""
    return {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None}


def public_base_url(settings: Settings, request: Request) -> str:
    """Externally visible base URL, honouring a proxy's X-Forwarded-Proto."""
    if settings.base_url:
        return settings.base_url.rstrip("/")
    protocol = request.headers.get("x-forwarded-proto") or request.url.scheme
    return f"{protocol}://{request.headers.get('host', request.url.netloc)}"


def resource_metadata_url(settings: Settings, request: Request) -> str:
    """Where clients find out how to obtain a token for this resource."""
    return f"{public_base_url(settings, request)}{settings.mcp_base_path}/.well-known/oauth-protected-resource"


def unauthorized_response(settings: Settings, request: Request) -> JSONResponse:
    """401 with the challenge header pointing at the resource metadata."""
    challenge = f'Bearer realm="mcp-server", resource_metadata="{resource_metadata_url(settings, request)}"'
    return JSONResponse(
        status_code=401,
        content=jsonrpc_error(-32600, "Unauthorized. Valid authentication credentials required."),
        headers={"WWW-Authenticate": challenge},
    )


class StatelessMCPEndpoint:
    """ASGI endpoint for ``POST {base}/mcp``.

    Request lifecycle: read the bearer token, verify it, build a new server
    and transport, hand the request over, then terminate the transport.
    Missing and invalid tokens get the same 401.
    """

    def __init__(self, settings: Settings, verifier: CognitoTokenVerifier, server_factory: Callable[[], Server]):
        self.settings = settings
        self.verifier = verifier
        self.server_factory = server_factory

    async def authenticate(self, request: Request) -> TokenClaims:
        """Verify the request's bearer token.

        Raises:
            AuthError: If the token is absent or fails verification
        """
        token = extract_bearer_token(request.headers.get("authorization"))
        if token is None:
            raise AuthError("Missing bearer token")
        return await self.verifier.verify(token)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)

        try:
            claims = await self.authenticate(request)
        except AuthError as e:
            logger.info(f"Rejected MCP request: {e}")
            await unauthorized_response(self.settings, request)(scope, receive, send)
            return

        logger.debug(f"Handling MCP request for subject {claims.sub}")

        response_started = False

        async def tracking_send(message: dict[str, Any]) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self._handle(scope, receive, tracking_send)
        except Exception as e:
            logger.error(f"Error handling MCP request: {e}", exc_info=True)
            if not response_started:
                error_response = JSONResponse(status_code=500, content=jsonrpc_error(-32603, "Internal server error"))
                await error_response(scope, receive, send)

    async def _handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        server = self.server_factory()
        transport = StreamableHTTPServerTransport(mcp_session_id=None, is_json_response_enabled=True)

        async def run_server(*, task_status=anyio.TASK_STATUS_IGNORED) -> None:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                    stateless=True,
                )

        async with anyio.create_task_group() as task_group:
            await task_group.start(run_server)
            try:
                await transport.handle_request(scope, receive, send)
            finally:
                logger.debug("Request closed")
                await transport.terminate()
                task_group.cancel_scope.cancel()


def create_app(
    settings: Settings | None = None,
    verifier: CognitoTokenVerifier | None = None,
    registry: ToolsRegistry | None = None,
) -> FastAPI:
    """Build the protected tool server application.

    Args:
        settings: Application settings (defaults to the environment)
        verifier: Token verifier (defaults to the configured Cognito pool)
        registry: Tools registry (defaults to OpenSCAD + Onshape from settings)
    """
    settings = settings or Settings.from_env()
    verifier = verifier or CognitoTokenVerifier.from_settings(settings)

    onshape: OnshapeClient | None = None
    if registry is None:
        onshape = OnshapeClient.from_settings(settings)
        registry = ToolsRegistry(OpenSCADCompiler.from_settings(settings), onshape)

    tools_registry = registry
    logger.info(f"Tool server exposing tools: {tools_registry.get_tool_names()}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if onshape is not None:
            await onshape.aclose()

    app = FastAPI(
        title="Onshape MCP Server",
        description="Stateless MCP endpoint exposing OpenSCAD and STL import tools for Onshape.",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )

    base = settings.mcp_base_path.rstrip("/")

    @app.get(f"{base}/.well-known/oauth-protected-resource", tags=["Discovery"])
    async def protected_resource_metadata(request: Request) -> dict[str, Any]:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
        return {
            "resource": f"{public_base_url(settings, request)}{base}/mcp",
            "authorization_servers": [settings.issuer],
            "bearer_methods_supported": ["header"],
            "scopes_supported": ["openid", "email", "profile"],
        }

    @app.get(f"{base}/", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Liveness check, reachable without a token."""
        return {"status": "healthy", "service": SERVICE_NAME}

    # No server-push stream and no session to terminate in stateless mode
    @app.api_route(f"{base}/mcp", methods=["GET", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"], include_in_schema=False)
    async def method_not_allowed(request: Request) -> JSONResponse:
        logger.info(f"Received {request.method} MCP request")
        return JSONResponse(status_code=405, content=jsonrpc_error(-32000, "Method not allowed."))

    endpoint = StatelessMCPEndpoint(settings, verifier, lambda: build_tool_server(tools_registry))
    app.router.routes.append(Route(f"{base}/mcp", endpoint=endpoint, methods=["POST"]))

    return app


def main() -> None:
    """Console entry point for the protected tool server."""
    load_dotenv()
    settings = Settings.from_env()
    setup_logging(LogConfig(level=settings.log_level))
    logger.info(f"Tool server listening on port {settings.tool_server_port}")
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.tool_server_port, log_level="info")


if __name__ == "__main__":
    main()
