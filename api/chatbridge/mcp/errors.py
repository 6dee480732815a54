"""
Error taxonomy for the MCP connection and execution core.
"""

from __future__ import annotations

from typing import Any


class MCPError(Exception):
    """Base class for all errors raised by the MCP core."""

    error_type = "MCPError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "error_type": self.error_type}


class ConfigError(MCPError):
    """Malformed or missing server configuration."""

    error_type = "ConfigError"


class ServerConnectionError(MCPError):
    """Spawn failure, handshake failure or transport crash."""

    error_type = "ConnectionError"

    def __init__(self, server_id: str, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.server_id = server_id
        self.diagnostics = diagnostics

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["server_id"] = self.server_id
        if self.diagnostics:
            data["diagnostics"] = self.diagnostics
        return data


class ToolNotFoundError(MCPError):
    """No connected server exposes the requested tool."""

    error_type = "ToolNotFound"

    def __init__(self, tool_name: str, message: str | None = None):
        super().__init__(message or f"Tool '{tool_name}' not found on any connected server")
        self.tool_name = tool_name


class AmbiguousToolError(MCPError):
    """An unqualified tool name matches tools on several servers."""

    error_type = "AmbiguousTool"

    def __init__(self, tool_name: str, candidates: list[str]):
        super().__init__(
            f"Tool name '{tool_name}' is ambiguous; use one of: {', '.join(sorted(candidates))}"
        )
        self.tool_name = tool_name
        self.candidates = sorted(candidates)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["candidates"] = self.candidates
        return data


class ServerUnavailableError(MCPError):
    """The owning server is not connected at dispatch time."""

    error_type = "ServerUnavailable"

    def __init__(self, server_id: str, message: str | None = None):
        super().__init__(message or f"Server '{server_id}' is not connected")
        self.server_id = server_id


class InvalidArgumentsError(MCPError):
    """Tool arguments do not satisfy the tool's input schema."""

    error_type = "InvalidArguments"

    def __init__(self, tool_name: str, errors: list[dict[str, str]]):
        summary = "; ".join(f"{e['path']}: {e['message']}" for e in errors)
        super().__init__(f"Invalid arguments for tool '{tool_name}': {summary}")
        self.tool_name = tool_name
        self.errors = errors


class ExecutionTimeoutError(MCPError):
    """A dispatched tool call did not answer within its timeout."""

    error_type = "ExecutionTimeout"

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(f"Tool execution timeout after {timeout:g}s")
        self.tool_name = tool_name
        self.timeout = timeout


class ExecutionCancelledError(MCPError):
    """An invocation was cancelled by a user or by the system."""

    error_type = "CancellationRequested"


def describe_error(error: BaseException | None) -> str:
    """
    Render an exception as a single readable message.

    The SDK runs its transports inside task groups, so failures often arrive
    wrapped in (possibly nested) exception groups.
    """
    if error is None:
        return "Unknown error"

    nested = getattr(error, "exceptions", None)
    if nested:
        parts = [describe_error(e) for e in nested]
        return "; ".join(dict.fromkeys(parts))

    if isinstance(error, MCPError):
        return error.message

    message = str(error).strip()
    if not message:
        return type(error).__name__
    if isinstance(error, OSError):
        # e.g. "FileNotFoundError: [Errno 2] No such file or directory: 'weather-mcp'"
        return f"{type(error).__name__}: {message}"
    return message
