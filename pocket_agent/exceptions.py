"""Custom exceptions for Pocket Agent."""


class PocketAgentError(Exception):
    """Base exception for Pocket Agent."""

    pass


class ConfigurationError(PocketAgentError):
    """Configuration-related errors."""

    pass


class CodecSyntaxError(PocketAgentError):
    """Malformed input handed to the structured-data codec."""

    def __init__(self, position: int, expected: str):
        super().__init__(f"Syntax error at position {position}: expected {expected}")
        self.position = position
        self.expected = expected


class ToolError(PocketAgentError):
    """Tool registry errors."""

    pass


class DuplicateToolError(ToolError):
    """A tool with the same name is already registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool already registered: {tool_name}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, cause: BaseException | str):
        message = str(cause) or type(cause).__name__
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.cause = cause


RETRYABLE_SESSION_MARKERS = ("token", "limit", "context", "session")


class SessionException(PocketAgentError):
    """Generation session errors reported by the engine."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        """Whether recreating the session is likely to recover."""
        lowered = (self.message or "").lower()
        return any(marker in lowered for marker in RETRYABLE_SESSION_MARKERS)


class AgentBusyError(PocketAgentError):
    """A chat call is already in flight on this agent."""

    def __init__(self) -> None:
        super().__init__("Agent is busy with another message")


class AgentAbort(PocketAgentError):
    """Loop-policy abort; converted into a user-visible message by chat()."""

    pass


class LoopDetectedError(AgentAbort):
    """The model kept requesting the same tool call."""

    def __init__(self, tool_name: str):
        super().__init__(f"Loop detected calling {tool_name}")
        self.tool_name = tool_name


class ToolFailedError(AgentAbort):
    """The model asked again for a tool that already failed."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool {tool_name} failed previously")
        self.tool_name = tool_name


class MaxTurnsExceededError(AgentAbort):
    """No final answer within the turn budget."""

    def __init__(self, max_turns: int):
        super().__init__(f"Max turns exceeded: {max_turns}")
        self.max_turns = max_turns


class SessionUnavailableError(AgentAbort):
    """Retries and session recreations are exhausted."""

    def __init__(self, reason: str):
        super().__init__(f"Session unavailable: {reason}")
        self.reason = reason


class FatalSessionError(AgentAbort):
    """Non-retryable engine failure."""

    def __init__(self, error: SessionException):
        super().__init__(error.message)
        self.error = error
