"""
chatbridge: connection and execution core for MCP tool servers.
"""

from .mcp.core import MCPCore

__all__ = ["MCPCore"]
