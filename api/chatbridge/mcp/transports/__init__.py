"""
MCP Transport Layer

Provides the transport used to reach MCP servers:
- stdio: Subprocess-based transport for local servers
"""

from .stdio import StdioConnection, StdioTransport

__all__ = ["StdioConnection", "StdioTransport"]
