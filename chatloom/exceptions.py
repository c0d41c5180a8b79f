"""Custom exceptions for chatloom."""


class ChatloomError(Exception):
    """Base exception for chatloom."""

    pass


class ConfigurationError(ChatloomError):
    """Configuration-related errors."""

    pass


class LLMError(ChatloomError):
    """Content generator errors."""

    pass


class LLMAPIError(LLMError):
    """Backend API errors (rate limit, auth, bad request, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PersistentQuotaError(LLMAPIError):
    """Transport gave up after repeated 429 responses for one model."""

    def __init__(self, model: str, message: str | None = None):
        super().__init__(
            message or f"Persistent quota errors (429) for model '{model}'",
            status_code=429,
        )
        self.model = model


class FallbackAbortedError(LLMError):
    """Fallback decision ended the request instead of retrying it."""

    def __init__(self, message: str, intent: str | None = None):
        super().__init__(message)
        self.intent = intent


class HistoryError(ChatloomError):
    """Chat history errors."""

    pass


class InvalidRoleError(HistoryError):
    """A history turn carries a role other than user or model."""

    def __init__(self, role: object):
        super().__init__(f"Role must be user or model, but got {role}.")
        self.role = role


class StreamError(ChatloomError):
    """Model stream errors."""

    pass


class InvalidStreamError(StreamError):
    """A drained stream did not produce a usable model reply."""

    def __init__(
        self,
        message: str,
        kind: str,
        finish_reason: str | None = None,
        should_retry: bool = True,
    ):
        super().__init__(message)
        self.kind = kind
        self.finish_reason = finish_reason
        self.should_retry = should_retry


class ToolError(ChatloomError):
    """Tool errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolConfirmationError(ToolError):
    """Confirming a tool call failed."""

    def __init__(self, call_id: str, message: str):
        super().__init__(f"Confirmation for tool call '{call_id}' failed: {message}")
        self.call_id = call_id


class ToolCallsCancelledError(ToolError):
    """Pending tool calls were cancelled before they resolved."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StreamAbortedError(StreamError):
    """The caller aborted while a stream was being drained."""

    pass
