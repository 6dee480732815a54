"""
MCP Core: Consumer-facing facade over the connection and execution core.

Wires the registry, connection manager, tool catalog, execution engine and
health monitor together. Every operation returns an Outcome; expected
failures (unknown server, unknown tool, unavailable server, bad config) are
reported in it instead of raised.

Example usage:
    core = MCPCore.from_settings()
    await core.start()

    outcome = await core.execute("weather.get_weather", {"location": "Paris"}, session_id="chat-1")
    if outcome.success:
        print(outcome.data.result.text)

    await core.shutdown()
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from ..config import Settings, get_settings
from ..events import EventEmitter
from ..utils.responses import Outcome, fail, ok, returns_outcome
from .catalog import ToolCatalog
from .client import MCPClientManager
from .errors import ConfigError, ToolNotFoundError
from .health import HealthMonitor
from .server_registry import ConfigStore, JSONConfigStore, ServerConfig, ServerRegistry
from .tool_executor import ToolExecutor
from .transports.stdio import StdioTransport

logger = logging.getLogger(__name__)


class MCPCore:
    """Owns every core component for one host application."""

    def __init__(
        self,
        store: ConfigStore,
        settings: Settings | None = None,
        events: EventEmitter | None = None,
        transport: StdioTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.events = events or EventEmitter()
        self.registry = ServerRegistry(store)
        self.connections = MCPClientManager(
            registry=self.registry,
            transport=transport,
            events=self.events,
            settings=self.settings,
        )
        self.catalog = ToolCatalog(self.connections)
        self.executor = ToolExecutor(self.connections, self.catalog, self.events, self.settings)
        self.health = HealthMonitor(self.connections)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "MCPCore":
        """Create a core reading servers from settings.config_path."""
        settings = settings or get_settings()
        return cls(JSONConfigStore(settings.config_path), settings=settings, **kwargs)

    # ---- lifecycle ----

    @returns_outcome
    async def start(self, auto_connect: bool = True, monitor: bool = True):
        """Load configuration, connect enabled servers and start the health monitor."""
        self.registry.load()
        data: dict[str, Any] = {"servers": self.registry.list_names(), "errors": dict(self.registry.load_errors)}
        if auto_connect:
            data["auto_connect"] = await self.health.auto_connect_all()
        if monitor:
            self.health.start()
        logger.info(f"MCP core started with {len(data['servers'])} configured servers")
        return data

    async def shutdown(self) -> Outcome:
        await self.health.stop()
        for record in self.executor.get_active_executions():
            self.executor.cancel(record.id, reason="Core shutting down")
        await self.connections.shutdown()
        logger.info("MCP core shut down")
        return ok()

    # ---- servers ----

    def list_servers(self) -> Outcome:
        statuses = []
        for status in self.connections.get_all_servers():
            if status is None:
                continue
            connection = self.connections.get_connection(status.server_id)
            statuses.append(replace(status, health=self.health.health_of(connection).value))
        return ok(statuses)

    @returns_outcome
    async def connect(self, server_id: str):
        return await self.connections.connect(server_id)

    @returns_outcome
    async def disconnect(self, server_id: str):
        return {"disconnected": await self.connections.disconnect(server_id)}

    @returns_outcome
    async def reconnect(self, server_id: str):
        return await self.connections.reconnect(server_id)

    @returns_outcome
    async def reload_config(self):
        return await self.connections.reload_config()

    @returns_outcome
    async def add_server(
        self,
        server_id: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        enabled: bool = True,
        name: str | None = None,
        description: str | None = None,
        timeout: float = 30.0,
        max_concurrency: int = 5,
    ):
        config = ServerConfig(
            id=server_id,
            command=command,
            args=list(args or []),
            env=dict(env or {}),
            enabled=enabled,
            name=name or server_id,
            description=description,
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
        self.registry.add(config)
        self.registry.save()
        return config

    @returns_outcome
    async def update_server(self, server_id: str, **changes: Any):
        current = self.registry.get(server_id)
        if current is None:
            raise ConfigError(f"Server with id '{server_id}' not found")
        unknown = set(changes) - {"command", "args", "env", "enabled", "name", "description", "timeout", "max_concurrency"}
        if unknown:
            raise ConfigError(f"Unknown server fields: {', '.join(sorted(unknown))}")
        updated = replace(current, **changes)
        self.registry.update(updated)
        self.registry.save()
        if updated != current:
            await self.connections.disconnect(server_id)
        return updated

    @returns_outcome
    async def remove_server(self, server_id: str):
        await self.connections.disconnect(server_id)
        if not self.registry.unregister(server_id):
            raise ConfigError(f"Server with id '{server_id}' not found")
        self.registry.save()
        return {"removed": server_id}

    @returns_outcome
    async def toggle_server(self, server_id: str, enabled: bool):
        config = self.registry.set_enabled(server_id, enabled)
        self.registry.save()
        if not enabled:
            await self.connections.disconnect(server_id)
        return config

    # ---- tools ----

    def get_all_enabled_tools(self) -> Outcome:
        return ok(self.catalog.get_all_enabled_tools())

    def get_function_specs(self) -> Outcome:
        return ok(self.catalog.get_function_specs())

    @returns_outcome
    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        session_id: str | None = None,
        timeout: float | None = None,
    ):
        return await self.executor.execute(tool_name, arguments, session_id=session_id, timeout=timeout)

    def cancel(self, invocation_id: str) -> Outcome:
        return ok({"cancelled": self.executor.cancel(invocation_id)})

    def get_execution(self, invocation_id: str) -> Outcome:
        record = self.executor.get_execution(invocation_id)
        if record is None:
            return fail(f"Execution '{invocation_id}' not found", ToolNotFoundError.error_type)
        return ok(record)

    def get_active_executions(self, session_id: str | None = None) -> Outcome:
        return ok(self.executor.get_active_executions(session_id))

    def get_history(self, session_id: str | None = None, limit: int | None = None) -> Outcome:
        return ok(self.executor.get_history(session_id, limit))

    def get_statistics(self, session_id: str | None = None) -> Outcome:
        return ok(self.executor.get_statistics(session_id))

    def prune_history(self, max_age: float) -> Outcome:
        return ok({"pruned": self.executor.prune_history(max_age)})

    def clear_history(self, session_id: str | None = None) -> Outcome:
        return ok({"cleared": self.executor.clear_history(session_id)})

    # ---- health ----

    @returns_outcome
    async def check_health(self, server_id: str | None = None):
        if server_id is None:
            return await self.health.perform_health_check()
        return await self.health.check_server_health(server_id)
