"""
Health Monitor: Liveness probes and reconnection for MCP servers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .client import ConnectionState, MCPClientManager, ServerConnection
from .errors import ConfigError, MCPError, describe_error

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Outcome of one probe."""

    server_id: str
    status: HealthStatus
    response_time_ms: float | None = None
    error: str | None = None
    tool_count: int = 0
    checked_at: float = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "tool_count": self.tool_count,
            "checked_at": self.checked_at,
        }


@dataclass
class HealthSummary:
    results: list[HealthCheckResult] = field(default_factory=list)
    connected_servers: int = 0
    total_servers: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected_servers": self.connected_servers,
            "total_servers": self.total_servers,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class AutoConnectResult:
    connected: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": list(self.connected),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
        }


class HealthMonitor:
    """
    Probes connected servers and reconnects the ones that dropped.

    Example usage:
        monitor = HealthMonitor(manager)
        await monitor.auto_connect_all()
        monitor.start()  # periodic probes + reconnection
        ...
        await monitor.stop()
    """

    def __init__(self, connections: MCPClientManager):
        self.connections = connections
        self.settings = connections.settings
        self._probes: dict[str, asyncio.Future] = {}
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_server_health(self, server_id: str) -> HealthCheckResult:
        """
        Ping one server.

        A failed ping downgrades the server to the error state. Concurrent
        probes of the same server share one ping.

        Raises:
            ConfigError: The server is not registered.
        """
        if self.connections.registry.get(server_id) is None:
            raise ConfigError(f"Server '{server_id}' not found in registry")

        connection = self.connections.get_connection(server_id)
        if connection is None or not connection.is_live:
            return HealthCheckResult(
                server_id=server_id,
                status=HealthStatus.UNHEALTHY,
                error=(connection.last_error if connection else None) or "Server is not connected",
            )

        probe = self._probes.get(server_id)
        if probe is None:
            probe = asyncio.ensure_future(self._probe(connection))
            self._probes[server_id] = probe
            probe.add_done_callback(lambda f: self._probes.pop(server_id, None) if self._probes.get(server_id) is f else None)
        return await asyncio.shield(probe)

    async def _probe(self, connection: ServerConnection) -> HealthCheckResult:
        server_id = connection.server_id
        transport = connection.transport
        started = time.monotonic()
        try:
            await asyncio.wait_for(connection.session.send_ping(), self.settings.health_check_timeout)
        except asyncio.TimeoutError:
            error = f"Health check timed out after {self.settings.health_check_timeout:g}s"
        except Exception as e:
            error = f"Health check failed: {describe_error(e)}"
        else:
            error = None
        response_time_ms = (time.monotonic() - started) * 1000

        if error is not None:
            logger.warning(f"MCP server '{server_id}' is unhealthy: {error}")
            await self.connections.mark_error(server_id, error, transport=transport)
            return HealthCheckResult(
                server_id=server_id,
                status=HealthStatus.UNHEALTHY,
                response_time_ms=response_time_ms,
                error=error,
            )

        connection.last_health_check = time.time()
        fetched_at = connection.tools_fetched_at or 0.0
        if time.time() - fetched_at > self.settings.tool_cache_ttl:
            try:
                await self.connections.refresh_tools(server_id)
            except MCPError as e:
                logger.debug(f"Skipped tool refresh for '{server_id}': {e.message}")
            except Exception as e:
                logger.warning(f"Failed to refresh tools for '{server_id}': {describe_error(e)}")

        logger.debug(f"MCP server '{server_id}' healthy ({response_time_ms:.0f}ms)")
        return HealthCheckResult(
            server_id=server_id,
            status=HealthStatus.HEALTHY,
            response_time_ms=response_time_ms,
            tool_count=len(connection.tools),
        )

    async def perform_health_check(self) -> HealthSummary:
        """Probe every connected server concurrently."""
        live = [c.server_id for c in self.connections.list_connections() if c.is_live]
        results = await asyncio.gather(*(self.check_server_health(sid) for sid in live), return_exceptions=True)

        summary = HealthSummary(total_servers=len(self.connections.registry.list_names()))
        for server_id, result in zip(live, results):
            if isinstance(result, BaseException):
                # Server removed from the registry while probing
                result = HealthCheckResult(server_id=server_id, status=HealthStatus.UNKNOWN, error=describe_error(result))
            summary.results.append(result)
        summary.connected_servers = sum(1 for r in summary.results if r.healthy)
        return summary

    def _backoff_remaining(self, connection: ServerConnection | None, now: float) -> float | None:
        """Seconds to wait before the next attempt, or None if attempts are exhausted."""
        if connection is None or connection.reconnect_attempts == 0:
            return 0.0
        if connection.reconnect_attempts >= self.settings.max_reconnect_attempts:
            return None
        delay = self.settings.reconnect_delay * 2 ** (connection.reconnect_attempts - 1)
        return max(0.0, (connection.last_attempt_at or 0.0) + delay - now)

    async def auto_connect_all(self, respect_backoff: bool = False) -> AutoConnectResult:
        """
        Connect every enabled server that is disconnected or failed.

        Args:
            respect_backoff: Skip servers still inside their retry delay or
                out of retry attempts.
        """
        result = AutoConnectResult()
        now = time.time()
        targets = []
        for config in self.connections.registry.list_enabled():
            connection = self.connections.get_connection(config.id)
            if connection is not None and connection.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                continue
            if respect_backoff:
                remaining = self._backoff_remaining(connection, now)
                if remaining is None or remaining > 0:
                    result.skipped.append(config.id)
                    continue
            targets.append(config.id)

        outcomes = await asyncio.gather(*(self.connections.connect(sid) for sid in targets), return_exceptions=True)
        for server_id, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                result.failed[server_id] = describe_error(outcome)
            else:
                result.connected.append(server_id)

        if targets:
            logger.info(
                f"Auto-connect: {len(result.connected)} connected, "
                f"{len(result.failed)} failed, {len(result.skipped)} skipped"
            )
        return result

    def health_of(self, connection: ServerConnection | None) -> HealthStatus:
        """Health derived from connection state and the age of the last probe."""
        if connection is None or connection.state != ConnectionState.CONNECTED:
            return HealthStatus.UNHEALTHY
        if connection.last_health_check is None:
            return HealthStatus.UNKNOWN
        if time.time() - connection.last_health_check > self.settings.health_check_interval * 2:
            return HealthStatus.UNKNOWN
        return HealthStatus.HEALTHY

    def start(self) -> None:
        """Run probes and reconnection in the background."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="mcp-health-monitor")
        logger.info(f"Health monitor started (interval {self.settings.health_check_interval:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Health monitor stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                await self.perform_health_check()
                if self.settings.auto_reconnect:
                    await self.auto_connect_all(respect_backoff=True)
            except Exception as e:
                logger.error(f"Health monitor cycle failed: {describe_error(e)}")
