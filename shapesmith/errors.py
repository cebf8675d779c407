"""Error taxonomy shared by the chat API and the tool server."""


class ShapesmithError(Exception):
    """Base class for all application errors."""


class AuthError(ShapesmithError):
    """Missing, malformed, expired or otherwise invalid bearer token."""


class ProtocolError(ShapesmithError):
    """Malformed request or conversation that breaks the message protocol."""

    def __init__(self, message: str, code: int = -32600):
        super().__init__(message)
        self.code = code


class ToolInvocationError(ShapesmithError):
    """A tool failed on the tool-server side."""


class UnknownToolError(ToolInvocationError):
    """The model asked for a tool that is not in its menu."""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool requested: {name}")
        self.name = name


class MalformedToolInputError(ShapesmithError):
    """Streamed tool input could not be parsed as a JSON object."""


class CompileError(ShapesmithError):
    """The OpenSCAD compiler failed, timed out or produced nothing."""


class CadServiceError(ShapesmithError):
    """The CAD document service returned an error response."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class FormatViolationError(ShapesmithError):
    """The model produced a forbidden output shape (raw mesh instead of a program)."""

    def __init__(self, message: str, hint: str):
        super().__init__(message)
        self.hint = hint


class IterationLimitError(ShapesmithError):
    """The agent loop hit its turn ceiling while the model still wanted tools."""

    def __init__(self, max_turns: int):
        super().__init__(f"Agent loop exceeded the maximum of {max_turns} turns without a final answer")
        self.max_turns = max_turns


class MessageTooLongError(ShapesmithError, ValueError):
    """The user message is over the per-message token limit."""
