from __future__ import annotations


class McpChatError(Exception):
    """Base exception for this project.

    Failures carry a small, stable `error_type` so callers can map them into
    statuses and tool results without inspecting exception classes.
    """

    error_type = "error"

    def __init__(self, message: str, *, error_type: str | None = None, details: dict[str, str] | None = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.message = message
        self.details = details or {}


class ConfigError(McpChatError):
    """Raised when configuration is invalid or incomplete."""

    error_type = "config_error"

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path
        self.reason = message


class TransportError(McpChatError):
    """The channel to a tool server could not be opened or is gone."""

    error_type = "transport_error"


class SessionTimeoutError(TransportError):
    error_type = "timeout"

    def __init__(self, *, operation: str, timeout_s: float):
        super().__init__(
            f"{operation} timed out after {timeout_s}s",
            details={"operation": operation, "timeout_s": str(timeout_s)},
        )
        self.timeout_s = timeout_s


class SessionClosedError(TransportError):
    error_type = "session_closed"


class SessionStateError(McpChatError):
    """A session operation was attempted before the handshake completed."""

    error_type = "session_not_ready"


class ProtocolError(McpChatError):
    """A tool server replied with something the protocol does not allow."""

    error_type = "protocol_error"


class ToolExecutionError(McpChatError):
    """The tool itself reported a failure (unknown tool, bad arguments, tool-side error)."""

    error_type = "tool_error"

    def __init__(self, tool_name: str, message: str, *, details: dict[str, str] | None = None):
        super().__init__(message, details=details)
        self.tool_name = tool_name


class ServerNotConnectedError(McpChatError):
    error_type = "not_connected"

    def __init__(self, server_id: str):
        super().__init__(f"Server {server_id!r} is not connected", details={"server_id": server_id})
        self.server_id = server_id


class OrchestrationError(McpChatError):
    """A failure that makes continuing the current turn meaningless."""

    error_type = "orchestration_error"


class ModelCallError(OrchestrationError):
    error_type = "model_error"
