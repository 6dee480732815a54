"""
MCP Client Manager: Core class for managing MCP server connections.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mcp import ClientSession

from ..config import Settings, get_settings
from ..events import EventEmitter, ServerStateChangedPayload
from .catalog import ToolDescriptor
from .errors import ConfigError, ServerConnectionError, ServerUnavailableError, describe_error
from .server_registry import ServerConfig, ServerRegistry
from .transports.stdio import StdioConnection, StdioTransport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle states of a server connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ServerConnection:
    """Represents the connection to one MCP server."""

    config: ServerConfig
    state: ConnectionState = ConnectionState.DISCONNECTED
    transport: StdioConnection | None = None
    tools: list[ToolDescriptor] = field(default_factory=list)
    last_error: str | None = None
    diagnostics: str = ""
    last_health_check: float | None = None
    connected_at: float | None = None
    tools_fetched_at: float | None = None
    reconnect_attempts: int = 0
    last_attempt_at: float | None = None
    protocol_version: str | None = None
    server_info: dict[str, Any] = field(default_factory=dict)

    @property
    def server_id(self) -> str:
        return self.config.id

    @property
    def session(self) -> ClientSession | None:
        return self.transport.session if self.transport is not None else None

    @property
    def is_live(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.session is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "name": self.config.display_name,
            "state": self.state.value,
            "tools_count": len(self.tools),
            "last_error": self.last_error,
            "diagnostics": self.diagnostics,
            "last_health_check": self.last_health_check,
            "connected_at": self.connected_at,
            "reconnect_attempts": self.reconnect_attempts,
            "protocol_version": self.protocol_version,
            "server_info": dict(self.server_info),
        }


@dataclass
class ServerStatus:
    """Read-only snapshot of one configured server."""

    server_id: str
    name: str
    enabled: bool
    state: ConnectionState
    tool_count: int = 0
    last_error: str | None = None
    diagnostics: str = ""
    last_health_check: float | None = None
    connected_at: float | None = None
    reconnect_attempts: int = 0
    health: str = "unknown"
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "name": self.name,
            "enabled": self.enabled,
            "state": self.state.value,
            "tool_count": self.tool_count,
            "last_error": self.last_error,
            "diagnostics": self.diagnostics,
            "last_health_check": self.last_health_check,
            "connected_at": self.connected_at,
            "reconnect_attempts": self.reconnect_attempts,
            "health": self.health,
            "description": self.description,
        }


@dataclass
class ReloadResult:
    """What a configuration reload changed."""

    servers: list[str] = field(default_factory=list)
    disconnected: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "servers": list(self.servers),
            "disconnected": list(self.disconnected),
            "errors": dict(self.errors),
        }


class MCPClientManager:
    """
    Manager for MCP client connections.

    Owns one ServerConnection per server that is connecting, connected or in
    error, and drives the state machine

        disconnected -> connecting -> connected -> disconnected
                        connecting -> error -> connecting
                                      connected -> error

    Example usage:
        manager = MCPClientManager(ServerRegistry(JSONConfigStore(".mcp-servers.json"), load=True))

        connection = await manager.connect("weather")
        print([tool.qualified_name for tool in connection.tools])
        await manager.disconnect("weather")
    """

    def __init__(
        self,
        registry: ServerRegistry | None = None,
        transport: StdioTransport | None = None,
        events: EventEmitter | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the MCP client manager.

        Args:
            registry: Server registry with pre-configured servers.
                     If None, a new empty registry is created.
            transport: Transport used to open connections.
            events: Emitter receiving server_state_changed events.
            settings: Runtime settings; defaults to get_settings().
        """
        self.registry = registry or ServerRegistry()
        self.settings = settings or get_settings()
        self.events = events or EventEmitter()
        self._transport = transport or StdioTransport(diagnostics_lines=self.settings.diagnostics_lines)

        self._connections: dict[str, ServerConnection] = {}
        self._map_lock = threading.Lock()
        self._server_locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._exit_tasks: set[asyncio.Task] = set()

    # ---- connection map ----

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        lock = self._server_locks.get(server_id)
        if lock is None:
            lock = self._server_locks[server_id] = asyncio.Lock()
        return lock

    def _store(self, connection: ServerConnection) -> None:
        with self._map_lock:
            self._connections[connection.server_id] = connection

    def _pop(self, server_id: str) -> ServerConnection | None:
        with self._map_lock:
            return self._connections.pop(server_id, None)

    def _set_state(self, connection: ServerConnection, state: ConnectionState, error: str | None = None) -> None:
        previous = connection.state
        connection.state = state
        if previous == state:
            return
        logger.debug(f"MCP server '{connection.server_id}': {previous.value} -> {state.value}")
        self.events.emit(
            EventEmitter.SERVER_STATE_CHANGED,
            ServerStateChangedPayload(
                event_name=EventEmitter.SERVER_STATE_CHANGED,
                server_id=connection.server_id,
                previous_state=previous.value,
                state=state.value,
                error=error,
                tool_count=len(connection.tools),
            ),
        )

    # ---- lifecycle ----

    async def connect(self, server_id: str) -> ServerConnection:
        """
        Connect to a registered MCP server.

        Args:
            server_id: Id of a registered, enabled server

        Returns:
            ServerConnection in the connected state with discovered tools

        Raises:
            ConfigError: The server is unknown or disabled.
            ServerConnectionError: Spawn, handshake or tool listing failed.
        """
        config = self.registry.get(server_id)
        if config is None:
            raise ConfigError(f"Server '{server_id}' not found in registry")
        if not config.enabled:
            raise ConfigError(f"Server '{server_id}' is disabled")

        existing = self.get_connection(server_id)
        if existing is not None and existing.is_live:
            return existing

        inflight = self._inflight.get(server_id)
        if inflight is None:
            inflight = asyncio.ensure_future(self._connect(config))
            self._inflight[server_id] = inflight
            inflight.add_done_callback(lambda f: self._connect_done(server_id, f))
        return await asyncio.shield(inflight)

    def _connect_done(self, server_id: str, future: asyncio.Future) -> None:
        if self._inflight.get(server_id) is future:
            del self._inflight[server_id]
        if not future.cancelled():
            # Mark the exception retrieved; every waiter re-raises it itself
            future.exception()

    async def _connect(self, config: ServerConfig) -> ServerConnection:
        async with self._lock_for(config.id):
            connection = self.get_connection(config.id)
            if connection is not None and connection.is_live:
                return connection
            if connection is None:
                connection = ServerConnection(config=config)
                self._store(connection)
            else:
                connection.config = config

            connection.last_attempt_at = time.time()
            self._set_state(connection, ConnectionState.CONNECTING)

            try:
                handle = await self._transport.open(
                    name=config.id,
                    command=config.command,
                    args=config.args,
                    env=config.resolve_env(),
                    timeout=self.settings.connect_timeout,
                    on_exit=self._on_transport_exit,
                )
                try:
                    tools = await asyncio.wait_for(
                        self._list_tools(handle.session, config.id),
                        self.settings.connect_timeout,
                    )
                except BaseException:
                    await handle.close(self.settings.close_timeout)
                    raise
            except asyncio.CancelledError:
                connection.last_error = "Connection attempt cancelled"
                self._set_state(connection, ConnectionState.ERROR, connection.last_error)
                raise
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    message = f"Timed out after {self.settings.connect_timeout:g}s listing tools"
                else:
                    message = describe_error(e)
                connection.transport = None
                connection.tools = []
                connection.last_error = message
                connection.diagnostics = getattr(e, "diagnostics", "")
                connection.reconnect_attempts += 1
                self._set_state(connection, ConnectionState.ERROR, message)
                logger.error(f"Failed to connect to MCP server '{config.id}': {message}")
                raise ServerConnectionError(config.id, message, connection.diagnostics) from e

            now = time.time()
            connection.transport = handle
            connection.tools = tools
            connection.tools_fetched_at = now
            connection.connected_at = now
            connection.last_health_check = now
            connection.last_error = None
            connection.diagnostics = ""
            connection.reconnect_attempts = 0
            connection.protocol_version = handle.protocol_version
            connection.server_info = dict(handle.server_info)
            self._set_state(connection, ConnectionState.CONNECTED)
            logger.info(f"Connected to '{config.id}': {len(tools)} tools")
            return connection

    async def _list_tools(self, session: ClientSession, server_id: str) -> list[ToolDescriptor]:
        """Discover available tools from an MCP server."""
        result = await session.list_tools()
        tools = [ToolDescriptor.from_mcp_tool(tool, server_id) for tool in result.tools]
        logger.info(f"Discovered {len(tools)} tools from server '{server_id}'")
        for tool in tools:
            logger.debug(f"  - {tool.qualified_name}: {tool.description[:50]}")
        return tools

    async def disconnect(self, server_id: str) -> bool:
        """
        Disconnect a server and forget its connection.

        Returns:
            False if the server had no connection.
        """
        async with self._lock_for(server_id):
            connection = self._pop(server_id)
            if connection is None:
                return False
            transport, connection.transport = connection.transport, None
            if transport is not None:
                await transport.close(self.settings.close_timeout)
            connection.tools = []
            connection.last_error = None
            self._set_state(connection, ConnectionState.DISCONNECTED)
            logger.info(f"Disconnected MCP server '{server_id}'")
            return True

    async def reconnect(self, server_id: str) -> ServerConnection:
        """Drop any existing connection and connect again with a fresh retry counter."""
        await self.disconnect(server_id)
        return await self.connect(server_id)

    async def mark_error(self, server_id: str, message: str, transport: StdioConnection | None = None) -> bool:
        """
        Downgrade a connected server to the error state and close its transport.

        Args:
            server_id: Server to downgrade
            message: Error recorded as last_error
            transport: Only act if this is still the server's transport

        Returns:
            True if the server was downgraded.
        """
        async with self._lock_for(server_id):
            connection = self.get_connection(server_id)
            if connection is None or connection.state != ConnectionState.CONNECTED:
                return False
            if transport is not None and connection.transport is not transport:
                return False

            handle, connection.transport = connection.transport, None
            if handle is not None:
                connection.diagnostics = handle.read_diagnostics(self.settings.diagnostics_lines)
            connection.tools = []
            connection.last_error = message
            # Downgraded before the close, which may be slow
            self._set_state(connection, ConnectionState.ERROR, message)
            logger.error(f"MCP server '{server_id}' marked as failed: {message}")
            if handle is not None:
                await handle.close(self.settings.close_timeout)
            return True

    def _on_transport_exit(self, handle: StdioConnection, error: BaseException | None) -> None:
        message = f"Server process exited: {describe_error(error)}" if error else "Server process exited"
        task = asyncio.ensure_future(self.mark_error(handle.server_name, message, transport=handle))
        self._exit_tasks.add(task)
        task.add_done_callback(self._exit_tasks.discard)

    async def refresh_tools(self, server_id: str) -> list[ToolDescriptor]:
        """Re-list the tools of a connected server."""
        connection = self.get_connection(server_id)
        if connection is None or not connection.is_live:
            raise ServerUnavailableError(server_id)
        transport = connection.transport
        tools = await self._list_tools(connection.session, server_id)
        if connection.transport is transport:
            connection.tools = tools
            connection.tools_fetched_at = time.time()
        return tools

    async def reload_config(self) -> ReloadResult:
        """
        Re-read the registry and disconnect servers whose configuration changed.

        Servers that were removed, disabled or edited are disconnected; the
        others keep their live connections.

        Raises:
            ConfigError: If the configuration store cannot be read at all.
        """
        self.registry.reload()
        result = ReloadResult(
            servers=self.registry.list_names(),
            errors=dict(self.registry.load_errors),
        )

        for connection in self.list_connections():
            config = self.registry.get(connection.server_id)
            if config is not None and config.enabled and config == connection.config:
                continue
            if await self.disconnect(connection.server_id):
                result.disconnected.append(connection.server_id)

        logger.info(
            f"Reloaded MCP config: {len(result.servers)} servers, "
            f"{len(result.disconnected)} disconnected, {len(result.errors)} invalid"
        )
        return result

    async def shutdown(self) -> None:
        """Disconnect every server."""
        server_ids = [c.server_id for c in self.list_connections()]
        await asyncio.gather(*(self.disconnect(sid) for sid in server_ids), return_exceptions=True)
        for task in list(self._exit_tasks):
            task.cancel()
        logger.info(f"MCP client manager shut down ({len(server_ids)} connections closed)")

    # ---- snapshots ----

    def get_status(self, server_id: str) -> ServerStatus | None:
        """Snapshot of a configured server, or None if it is not registered."""
        config = self.registry.get(server_id)
        if config is None:
            return None
        connection = self.get_connection(server_id)
        if connection is None:
            return ServerStatus(
                server_id=config.id,
                name=config.display_name,
                enabled=config.enabled,
                state=ConnectionState.DISCONNECTED,
                description=config.description,
            )
        return ServerStatus(
            server_id=config.id,
            name=config.display_name,
            enabled=config.enabled,
            state=connection.state,
            tool_count=len(connection.tools),
            last_error=connection.last_error,
            diagnostics=connection.diagnostics,
            last_health_check=connection.last_health_check,
            connected_at=connection.connected_at,
            reconnect_attempts=connection.reconnect_attempts,
            description=config.description,
        )

    def get_all_servers(self) -> list[ServerStatus]:
        """Snapshots of every configured server."""
        return [self.get_status(sid) for sid in self.registry.list_names()]

    def list_connections(self) -> list[ServerConnection]:
        """List all tracked connections."""
        with self._map_lock:
            return list(self._connections.values())

    def is_connected(self, server_id: str) -> bool:
        """Check if a server is connected."""
        connection = self.get_connection(server_id)
        return connection is not None and connection.is_live

    def get_connection(self, server_id: str) -> ServerConnection | None:
        """Get a tracked connection by server id."""
        with self._map_lock:
            return self._connections.get(server_id)

    def get_session(self, server_id: str) -> ClientSession:
        """
        Live session of a connected server.

        Raises:
            ServerUnavailableError: The server is not connected.
        """
        connection = self.get_connection(server_id)
        if connection is None or not connection.is_live:
            raise ServerUnavailableError(server_id)
        return connection.session
