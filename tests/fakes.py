"""Fake collaborators shared by the tests."""

import json
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from shapesmith.clients.anthropic import AnthropicResponse
from shapesmith.clients.onshape import OnshapeClient, OnshapeConfig
from shapesmith.errors import MessageTooLongError
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
from shapesmith.models.tools import ToolDescriptor, ToolOutput

CUBE_STL = """solid OpenSCAD_Model
  facet normal 0 0 1
    outer loop
      vertex 0 0 10
      vertex 10 0 10
      vertex 10 10 10
    endloop
  endfacet
endsolid OpenSCAD_Model
"""


@dataclass
class ScriptedTurn:
    """One canned model turn."""

    content: list[ContentBlock]
    stop_reason: str = "end_turn"
    # Raw stream events replace the ones derived from ``content`` when set
    events: list[ModelStreamEvent] | None = None


def text_turn(text: str) -> ScriptedTurn:
    return ScriptedTurn(content=[TextBlock(text=text)])


def tool_turn(*calls: tuple[str, str, dict[str, Any]], text: str | None = None) -> ScriptedTurn:
    content: list[ContentBlock] = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=call_id, name=name, input=args) for call_id, name, args in calls)
    return ScriptedTurn(content=content, stop_reason="tool_use")


class FakeModelClient:
    """Stands in for ``AnthropicClient`` and replays scripted turns."""

    def __init__(self, turns: list[ScriptedTurn], max_message_tokens: int = 2000):
        self.turns = list(turns)
        self.max_message_tokens = max_message_tokens
        self.requests: list[dict[str, Any]] = []

    def _next_turn(self, messages, system_prompt, tools) -> ScriptedTurn:
        self.requests.append(
            {"messages": [m.model_copy(deep=True) for m in messages], "system_prompt": system_prompt, "tools": tools}
        )
        if not self.turns:
            raise AssertionError("Model called more often than scripted")
        return self.turns.pop(0)

    async def create_message(self, messages, system_prompt, tools=None, **kwargs) -> AnthropicResponse:
        turn = self._next_turn(messages, system_prompt, tools)
        return AnthropicResponse(
            content=turn.content,
            stop_reason=turn.stop_reason,
            usage=LLMUsage(input_tokens=10, output_tokens=5, total_tokens=15),
            model="fake-model",
        )

    async def stream_message(self, messages, system_prompt, tools=None, **kwargs):
        turn = self._next_turn(messages, system_prompt, tools)
        if turn.events is not None:
            for event in turn.events:
                yield event
            return

        for index, block in enumerate(turn.content):
            if isinstance(block, TextBlock):
                # Split text so callers see more than one delta
                middle = len(block.text) // 2
                for part in (block.text[:middle], block.text[middle:]):
                    if part:
                        yield TextDelta(index=index, text=part)
            elif isinstance(block, ToolUseBlock):
                yield ToolUseStart(index=index, id=block.id, name=block.name)
                raw = json.dumps(block.input)
                middle = len(raw) // 2
                yield ToolInputDelta(index=index, partial_json=raw[:middle])
                yield ToolInputDelta(index=index, partial_json=raw[middle:])
            yield ContentBlockStop(index=index)

        usage = LLMUsage(input_tokens=10, output_tokens=5, total_tokens=15)
        yield MessageStop(stop_reason=turn.stop_reason, usage=usage)

    def validate_message_tokens(self, message: str) -> None:
        tokens = len(message) // 4
        if tokens > self.max_message_tokens:
            raise MessageTooLongError(f"Message exceeds token limit: {tokens} tokens > {self.max_message_tokens} limit")


@dataclass
class FakeBridge:
    """Stands in for ``ToolBridge`` and records every call."""

    descriptors: list[ToolDescriptor] = field(
        default_factory=lambda: [
            ToolDescriptor(name="create_from_openscad", description="Create a model from OpenSCAD code"),
            ToolDescriptor(name="import_stl", description="Import raw STL"),
        ]
    )
    outputs: dict[str, ToolOutput] = field(default_factory=dict)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    connected: bool = True
    closed: bool = False

    async def connect(self) -> None:
        self.connected = True

    async def list_tools(self) -> list[ToolDescriptor]:
        return list(self.descriptors)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolOutput:
        self.calls.append((name, arguments))
        return self.outputs.get(name, ToolOutput.from_text(f"{name} ok"))

    async def aclose(self) -> None:
        self.closed = True


def mock_onshape_client(uploads: list[bytes] | None = None) -> OnshapeClient:
    """Onshape client whose HTTP calls are answered in-process."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/documents"):
            return httpx.Response(200, json={"id": "doc123", "defaultWorkspace": {"id": "ws456"}})
        if "/blobelements/" in path:
            if uploads is not None:
                uploads.append(request.content)
            return httpx.Response(200, json={"id": "blob789"})
        return httpx.Response(200, json={})

    return OnshapeClient(
        OnshapeConfig(api_url="https://onshape.test/api/v12", access_key="a", secret_key="s"),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def make_signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwks(signing_key: rsa.RSAPrivateKey, kid: str) -> dict[str, Any]:
    """Key set document publishing the public half of ``signing_key``."""
    public_jwk = json.loads(RSAAlgorithm.to_jwk(signing_key.public_key()))
    public_jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return {"keys": [public_jwk]}


def sign_token(signing_key: rsa.RSAPrivateKey, issuer: str, client_id: str, kid: str | None, /, **overrides) -> str:
    """RS256 Cognito-style access token; ``overrides`` replace or add claims."""
    claims = {
        "iss": issuer,
        "sub": "user-1",
        "client_id": client_id,
        "token_use": "access",
        "scope": "openid email",
        "exp": int(time.time()) + 300,
    }
    claims.update(overrides)
    headers = {"kid": kid} if kid else {}
    return jwt.encode(claims, signing_key, algorithm="RS256", headers=headers)


def jwks_client(body: Any, requests: list[httpx.Request] | None = None) -> httpx.AsyncClient:
    """HTTP client whose every GET returns ``body`` as the key set."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(200, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
