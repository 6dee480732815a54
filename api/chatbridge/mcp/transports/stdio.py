"""
Stdio Transport: Subprocess-based transport for local MCP servers.

Each connection is owned by one background task that enters the SDK's
``stdio_client`` and ``ClientSession`` contexts, runs the initialize
handshake and then parks until the connection is closed. The SDK's anyio
cancel scopes must be exited by the task that entered them, so closing a
connection only signals that task and waits for it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import IO, Any, Awaitable, Callable, Optional

from mcp import ClientSession
from mcp.client.stdio import stdio_client, StdioServerParameters

from ..errors import ServerConnectionError, describe_error

logger = logging.getLogger(__name__)

# Called when a connection ends without close() having been requested
ExitCallback = Callable[["StdioConnection", Optional[BaseException]], Awaitable[None] | None]


@dataclass
class StdioConnection:
    """Represents an active stdio connection to an MCP server."""

    server_name: str
    session: ClientSession | None = None
    server_info: dict[str, Any] = field(default_factory=dict)
    protocol_version: str | None = None
    closing: bool = False
    _close_event: asyncio.Event = field(default_factory=asyncio.Event)
    _task: asyncio.Task | None = None
    _errlog: IO[str] | None = None

    @property
    def alive(self) -> bool:
        return (
            self.session is not None
            and not self.closing
            and self._task is not None
            and not self._task.done()
        )

    def read_diagnostics(self, max_lines: int = 20) -> str:
        """Return the tail of the server's stderr output."""
        if self._errlog is None or self._errlog.closed:
            return ""
        try:
            self._errlog.flush()
            self._errlog.seek(0)
            lines = self._errlog.read().splitlines()
        except (OSError, ValueError):
            return ""
        return "\n".join(line for line in lines[-max_lines:] if line.strip())

    async def close(self, timeout: float = 5.0) -> None:
        """Close the connection and cleanup resources."""
        self.closing = True
        self._close_event.set()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"MCP server '{self.server_name}' did not shut down in {timeout:g}s, cancelling")
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            except Exception as e:
                logger.debug(f"Error while closing MCP server '{self.server_name}': {describe_error(e)}")
        self.session = None
        if self._errlog is not None and not self._errlog.closed:
            self._errlog.close()
        logger.info(f"Closed stdio connection to {self.server_name}")


class StdioTransport:
    """Transport for connecting to MCP servers via subprocess stdio."""

    def __init__(self, diagnostics_lines: int = 20):
        self._active_connections: dict[str, StdioConnection] = {}
        self.diagnostics_lines = diagnostics_lines

    async def open(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float = 15.0,
        on_exit: ExitCallback | None = None,
    ) -> StdioConnection:
        """
        Spawn an MCP server and complete the initialize handshake.

        Args:
            name: Unique name for this connection
            command: Command to run (e.g., "npx", "python")
            args: Arguments for the command
            env: Environment variables to pass to the subprocess
            timeout: Seconds allowed for spawn plus handshake
            on_exit: Callback for connections that end on their own

        Returns:
            StdioConnection: The live connection handle

        Raises:
            ServerConnectionError: If the process cannot be spawned or the
                handshake fails or times out.
        """
        if self.is_connected(name):
            raise ServerConnectionError(name, f"Server '{name}' already has an open connection")

        # Merge environment
        full_env = {**os.environ, **(env or {})}

        server_params = StdioServerParameters(
            command=command,
            args=args or [],
            env=full_env,
        )

        logger.info(f"Connecting to MCP server '{name}' via stdio: {command} {' '.join(args or [])}")

        connection = StdioConnection(server_name=name, _errlog=tempfile.TemporaryFile("w+"))
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        connection._task = asyncio.create_task(
            self._run(connection, server_params, ready, on_exit),
            name=f"mcp-stdio-{name}",
        )

        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout)
        except asyncio.TimeoutError:
            ready.cancel()
            diagnostics = connection.read_diagnostics(self.diagnostics_lines)
            await connection.close()
            raise ServerConnectionError(
                name, f"Timed out after {timeout:g}s waiting for MCP handshake", diagnostics
            )
        except asyncio.CancelledError:
            await connection.close()
            raise
        except Exception as e:
            diagnostics = connection.read_diagnostics(self.diagnostics_lines)
            await connection.close()
            raise ServerConnectionError(name, describe_error(e), diagnostics) from e

        self._active_connections[name] = connection
        logger.info(
            f"Connected to MCP server '{name}' "
            f"(protocol {connection.protocol_version}, server {connection.server_info.get('name', 'unknown')})"
        )
        return connection

    async def _run(
        self,
        connection: StdioConnection,
        server_params: StdioServerParameters,
        ready: asyncio.Future,
        on_exit: ExitCallback | None,
    ) -> None:
        error: BaseException | None = None
        try:
            async with stdio_client(server_params, errlog=connection._errlog) as (read, write):
                async with ClientSession(read, write) as session:
                    result = await session.initialize()
                    connection.session = session
                    connection.protocol_version = str(result.protocolVersion)
                    if result.serverInfo is not None:
                        connection.server_info = {
                            "name": result.serverInfo.name,
                            "version": result.serverInfo.version,
                        }
                    if not ready.done():
                        ready.set_result(connection)
                    await connection._close_event.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            error = e
            if not ready.done():
                ready.set_exception(e)
        finally:
            connection.session = None
            if self._active_connections.get(connection.server_name) is connection:
                del self._active_connections[connection.server_name]
            logger.info(f"Disconnected from MCP server '{connection.server_name}'")

        if ready.done() and not ready.cancelled() and ready.exception() is None and not connection.closing:
            logger.warning(
                f"MCP server '{connection.server_name}' exited unexpectedly: {describe_error(error)}"
            )
            if on_exit is not None:
                outcome = on_exit(connection, error)
                if asyncio.iscoroutine(outcome):
                    await outcome

    def is_connected(self, name: str) -> bool:
        """Check if a server has a live connection."""
        connection = self._active_connections.get(name)
        return connection is not None and connection.alive
