"""Environment-driven application settings."""

import os
from typing import Literal

from pydantic import BaseModel, Field


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Settings for the chat API and the tool server.

    Every external address and credential is read from the environment so
    that nothing deployment-specific is hard-coded.
    """

    # Model provider
    model_provider: Literal["anthropic", "bedrock"] = "anthropic"
    model_id: str = "claude-sonnet-4-5"
    anthropic_api_key: str | None = None
    aws_region: str = "us-east-2"
    max_turns: int = 10

    # CAD back end
    onshape_api_url: str = "https://cad.onshape.com/api/v12"
    onshape_access_key: str | None = None
    onshape_secret_key: str | None = None

    # Geometry compiler
    openscad_bin: str = "openscad"
    openscad_timeout: float = 30.0

    # Tool bridge
    tools_transport: Literal["stdio", "http"] = "stdio"
    tools_command: str = "python"
    tools_args: list[str] = Field(default_factory=lambda: ["-m", "shapesmith.toolserver.stdio"])
    tools_url: str | None = None
    tools_token: str | None = None
    blocked_tools: list[str] = Field(default_factory=lambda: ["import_stl"])

    # Protected tool server
    base_url: str | None = None
    mcp_base_path: str = "/onshape"
    cognito_region: str = "us-west-2"
    cognito_user_pool_id: str | None = None
    cognito_client_id: str | None = None

    port: int = 3001
    tool_server_port: int = 8080
    log_level: str = "INFO"

    @property
    def issuer(self) -> str:
        """Token issuer URL for the configured user pool."""
        return f"https://cognito-idp.{self.cognito_region}.amazonaws.com/{self.cognito_user_pool_id}"

    @property
    def jwks_url(self) -> str:
        """Published key set of the token issuer."""
        return f"{self.issuer}/.well-known/jwks.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        env = os.environ
        values: dict[str, object] = {
            "model_provider": env.get("MODEL_PROVIDER"),
            "model_id": env.get("MODEL_ID"),
            "anthropic_api_key": env.get("ANTHROPIC_API_KEY"),
            "aws_region": env.get("AWS_REGION"),
            "max_turns": env.get("MAX_TURNS"),
            "onshape_api_url": env.get("ONSHAPE_API_URL"),
            "onshape_access_key": env.get("ONSHAPE_ACCESS_KEY"),
            "onshape_secret_key": env.get("ONSHAPE_SECRET_KEY"),
            "openscad_bin": env.get("OPENSCAD_BIN"),
            "openscad_timeout": env.get("OPENSCAD_TIMEOUT"),
            "tools_transport": env.get("TOOLS_TRANSPORT"),
            "tools_command": env.get("TOOLS_COMMAND"),
            "tools_url": env.get("TOOLS_URL"),
            "tools_token": env.get("TOOLS_TOKEN"),
            "base_url": env.get("BASE_URL"),
            "mcp_base_path": env.get("MCP_BASE_PATH"),
            "cognito_region": env.get("COGNITO_REGION"),
            "cognito_user_pool_id": env.get("COGNITO_USER_POOL_ID"),
            "cognito_client_id": env.get("COGNITO_CLIENT_ID"),
            # Each process reads PORT for its own listener
            "port": env.get("PORT"),
            "tool_server_port": env.get("PORT"),
            "log_level": env.get("LOG_LEVEL"),
        }
        if "TOOLS_ARGS" in env:
            values["tools_args"] = env["TOOLS_ARGS"].split()
        if "BLOCKED_TOOLS" in env:
            values["blocked_tools"] = _split_csv(env["BLOCKED_TOOLS"])

        return cls.model_validate({key: value for key, value in values.items() if value is not None})
