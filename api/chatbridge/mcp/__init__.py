"""
MCP (Model Context Protocol) Client Module

This module provides the infrastructure for chatbridge to consume tools from
external MCP servers: spawning them over stdio, tracking their connection
state and health, and routing tool invocations with full lifecycle tracking.
"""

from .catalog import ToolCatalog, ToolDescriptor
from .client import ConnectionState, MCPClientManager, ServerConnection, ServerStatus
from .errors import (
    AmbiguousToolError,
    ConfigError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    InvalidArgumentsError,
    MCPError,
    ServerConnectionError,
    ServerUnavailableError,
    ToolNotFoundError,
)
from .health import HealthMonitor, HealthStatus
from .server_registry import JSONConfigStore, MemoryConfigStore, ServerConfig, ServerRegistry
from .tool_executor import ExecutionRecord, ExecutionStatus, ToolExecutor, ToolResult

__all__ = [
    "MCPClientManager",
    "ConnectionState",
    "ServerConnection",
    "ServerStatus",
    "ServerRegistry",
    "ServerConfig",
    "JSONConfigStore",
    "MemoryConfigStore",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolExecutor",
    "ToolResult",
    "ExecutionRecord",
    "ExecutionStatus",
    "HealthMonitor",
    "HealthStatus",
    "MCPError",
    "ConfigError",
    "ServerConnectionError",
    "ToolNotFoundError",
    "AmbiguousToolError",
    "ServerUnavailableError",
    "InvalidArgumentsError",
    "ExecutionTimeoutError",
    "ExecutionCancelledError",
]
