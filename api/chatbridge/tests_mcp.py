"""
MCP Connection & Execution Core Tests

This file covers the connection manager, tool catalog, execution engine,
health monitor and core facade:
- Schema parsing and tool resolution
- Connection state machine (idempotent/shared connect, failures, reload)
- Execution lifecycle (completion, failures, timeouts, cancellation, statistics)
- Health probes, auto-connect and reconnection backoff
- End-to-end scenarios against a real stdio server (spawned subprocess)
"""

import asyncio
import os
import sys
import time
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase, skipIf
from unittest.mock import patch

import anyio
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, INVALID_PARAMS, CallToolResult, ErrorData, ListToolsResult, TextContent, Tool

from chatbridge.config import Settings
from chatbridge.events import EventEmitter
from chatbridge.mcp.catalog import InvalidSchema, ToolCatalog, ToolDescriptor, ValidSchema, parse_input_schema
from chatbridge.mcp.client import ConnectionState, MCPClientManager
from chatbridge.mcp.core import MCPCore
from chatbridge.mcp.errors import (
    AmbiguousToolError,
    ConfigError,
    ServerConnectionError,
    ServerUnavailableError,
    ToolNotFoundError,
)
from chatbridge.mcp.health import HealthMonitor, HealthStatus
from chatbridge.mcp.server_registry import MemoryConfigStore, ServerConfig, ServerRegistry
from chatbridge.mcp.tool_executor import ExecutionRecord, ExecutionStatus, ToolExecutor, ToolInvocation


# =============================================================================
# Helper Functions
# =============================================================================

WEATHER_SCHEMA = {
    "type": "object",
    "properties": {"location": {"type": "string"}},
    "required": ["location"],
}

FIXTURE_SERVER = Path(__file__).parent / "test_fixtures" / "weather_server.py"


def _process_tests_disabled():
    """Subprocess tests can be switched off on machines that cannot spawn servers."""
    return os.environ.get("CHATBRIDGE_SKIP_PROCESS_TESTS", "").lower() in ("1", "true", "yes")


def _tool(name, schema=None, description=""):
    return Tool(name=name, description=description, inputSchema=schema if schema is not None else {"type": "object"})


def _text_result(text, is_error=False):
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def _test_settings(**overrides):
    values = {
        "connect_timeout": 1.0,
        "close_timeout": 0.5,
        "health_check_timeout": 0.2,
        "health_check_interval": 30.0,
        "tool_cache_ttl": 60.0,
        "reconnect_delay": 2.0,
        "max_reconnect_attempts": 3,
    }
    values.update(overrides)
    return Settings(**values)


class FakeSession:
    """Stands in for mcp.ClientSession."""

    def __init__(self, tools, handler=None):
        self.tools = list(tools)
        self.handler = handler
        self.calls = []
        self.progress_callback = None
        self.list_calls = 0
        self.pings = 0
        self.ping_error = None
        self.ping_delay = 0.0

    async def list_tools(self):
        self.list_calls += 1
        return ListToolsResult(tools=self.tools)

    async def call_tool(self, name, arguments=None, progress_callback=None):
        self.calls.append((name, arguments))
        self.progress_callback = progress_callback
        if self.handler is None:
            return _text_result(f"{name} ok")
        return await self.handler(name, arguments)

    async def send_ping(self):
        self.pings += 1
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if self.ping_error is not None:
            raise self.ping_error


class FakeHandle:
    """Stands in for transports.stdio.StdioConnection."""

    def __init__(self, name, session, stderr=""):
        self.server_name = name
        self.session = session
        self.protocol_version = "2025-06-18"
        self.server_info = {"name": name, "version": "1.0"}
        self.stderr = stderr
        self.closed = False
        self.close_delay = 0.0

    @property
    def alive(self):
        return not self.closed

    def read_diagnostics(self, max_lines=20):
        return self.stderr

    async def close(self, timeout=5.0):
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        self.session = None


class FakeTransport:
    """Stands in for transports.stdio.StdioTransport."""

    def __init__(self, sessions=None):
        self.sessions = dict(sessions or {})
        self.failures = {}
        self.open_calls = []
        self.handles = []
        self.delay = 0.0
        self.on_exit = None

    async def open(self, name, command, args=None, env=None, timeout=15.0, on_exit=None):
        self.open_calls.append(name)
        self.on_exit = on_exit
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.failures:
            raise self.failures[name]
        handle = FakeHandle(name, self.sessions[name])
        self.handles.append(handle)
        return handle


def _build_manager(servers, sessions, **settings_overrides):
    store = MemoryConfigStore({"mcpServers": servers})
    registry = ServerRegistry(store, load=True)
    transport = FakeTransport(sessions)
    events = EventEmitter()
    manager = MCPClientManager(registry, transport=transport, events=events, settings=_test_settings(**settings_overrides))
    return manager, transport, events


def _record_events(events, *names):
    received = []
    for name in names:
        events.on(name, lambda payload, name=name: received.append((name, payload)))
    return received


# =============================================================================
# Tool Catalog: schemas and descriptors
# =============================================================================

class InputSchemaParsingTest(TestCase):
    """Test parsing of declared tool input schemas."""

    def test_empty_schema_is_empty_object(self):
        schema = parse_input_schema({})
        self.assertIsInstance(schema, ValidSchema)
        self.assertEqual(schema.schema, {"type": "object", "properties": {}})

    def test_missing_schema_is_invalid(self):
        self.assertIsInstance(parse_input_schema(None), InvalidSchema)

    def test_non_mapping_schema_is_invalid(self):
        schema = parse_input_schema(["location"])
        self.assertIsInstance(schema, InvalidSchema)
        self.assertIn("list", schema.reason)

    def test_non_object_root_is_invalid(self):
        self.assertIsInstance(parse_input_schema({"type": "string"}), InvalidSchema)

    def test_metaschema_violation_is_invalid(self):
        schema = parse_input_schema({"type": "object", "properties": {"location": {"type": "place"}}})
        self.assertIsInstance(schema, InvalidSchema)

    def test_object_root_variants(self):
        self.assertIsInstance(parse_input_schema({"type": ["object", "null"]}), ValidSchema)
        untyped = parse_input_schema({"properties": {"q": {"type": "string"}}})
        self.assertEqual(untyped.schema["type"], "object")

    def test_required_is_deduplicated(self):
        schema = parse_input_schema({"type": "object", "properties": {"a": {}}, "required": ["a", "a"]})
        self.assertEqual(schema.schema["required"], ["a"])

    def test_input_is_not_mutated(self):
        raw = {"type": "object", "required": ["a", "a"]}
        parse_input_schema(raw)
        self.assertEqual(raw, {"type": "object", "required": ["a", "a"]})


class ToolDescriptorTest(TestCase):

    def test_names(self):
        descriptor = ToolDescriptor.from_mcp_tool(_tool("get_weather", WEATHER_SCHEMA), "weather")
        self.assertEqual(descriptor.qualified_name, "weather.get_weather")
        self.assertEqual(descriptor.function_name, "weather_get_weather")
        self.assertTrue(descriptor.callable)

    def test_category_and_danger_hints(self):
        read_file = ToolDescriptor.from_mcp_tool(_tool("read_file"), "fs")
        delete_repo = ToolDescriptor.from_mcp_tool(_tool("delete_repo", description="Delete a repository"), "gh")
        self.assertEqual(read_file.category, "filesystem")
        self.assertFalse(read_file.dangerous)
        self.assertEqual(delete_repo.category, "version-control")
        self.assertTrue(delete_repo.dangerous)

    def test_invalid_schema_is_listed_but_not_callable(self):
        tool = Tool.model_construct(name="legacy", description="Old tool", inputSchema=None)
        descriptor = ToolDescriptor.from_mcp_tool(tool, "old")
        self.assertFalse(descriptor.callable)
        self.assertIn("schema_error", descriptor.to_dict())
        with self.assertRaises(ValueError):
            descriptor.to_function_spec()

    def test_function_spec(self):
        spec = ToolDescriptor.from_mcp_tool(_tool("get_weather", WEATHER_SCHEMA, "Weather now"), "weather").to_function_spec()
        self.assertEqual(spec["type"], "function")
        self.assertEqual(spec["function"]["name"], "weather_get_weather")
        self.assertEqual(spec["function"]["parameters"]["required"], ["location"])


# =============================================================================
# Tool Catalog: aggregation and resolution
# =============================================================================

class ToolResolutionTest(IsolatedAsyncioTestCase):
    """Two servers expose a tool with the same name."""

    async def asyncSetUp(self):
        self.sessions = {
            "a": FakeSession([_tool("search"), _tool("only_a")]),
            "b": FakeSession([_tool("search"), Tool.model_construct(name="legacy", inputSchema=None)]),
            "c": FakeSession([_tool("only_c")]),
        }
        self.manager, self.transport, _ = _build_manager(
            {
                "a": {"command": "a-mcp"},
                "b": {"command": "b-mcp"},
                "c": {"command": "c-mcp"},
            },
            self.sessions,
        )
        self.catalog = ToolCatalog(self.manager)
        await self.manager.connect("a")
        await self.manager.connect("b")

    async def test_bare_name_collision_is_ambiguous(self):
        with self.assertRaises(AmbiguousToolError) as ctx:
            self.catalog.resolve_tool("search")
        self.assertEqual(ctx.exception.candidates, ["a.search", "b.search"])

    async def test_qualified_and_alias_names_resolve(self):
        self.assertEqual(self.catalog.resolve_tool("a.search").server_id, "a")
        self.assertEqual(self.catalog.resolve_tool("b_search").server_id, "b")

    async def test_unique_bare_name_resolves(self):
        self.assertEqual(self.catalog.resolve_tool("only_a").qualified_name, "a.only_a")

    async def test_tools_of_disconnected_servers_are_not_found(self):
        with self.assertRaises(ToolNotFoundError):
            self.catalog.resolve_tool("only_c")

    async def test_enabled_tools_reflect_live_connections(self):
        tools = self.catalog.get_all_enabled_tools()
        self.assertEqual(sorted(tools), ["a", "b"])

        await self.manager.disconnect("b")

        self.assertEqual(sorted(self.catalog.get_all_enabled_tools()), ["a"])
        self.assertEqual(self.catalog.resolve_tool("search").qualified_name, "a.search")

    async def test_uncallable_tools_are_listed_without_function_spec(self):
        names = [t.qualified_name for t in self.catalog.list_tools()]
        specs = [s["function"]["name"] for s in self.catalog.get_function_specs()]
        self.assertIn("b.legacy", names)
        self.assertNotIn("b_legacy", specs)
        self.assertIn("a_search", specs)

    async def test_tool_to_server_map(self):
        self.assertEqual(self.catalog.get_tool_to_server_map()["b.search"], "b")
        self.assertIsNone(self.catalog.get_tool_metadata("search"))

    async def test_colliding_function_names_are_left_out_of_specs(self):
        manager, _, _ = _build_manager(
            {"a_b": {"command": "ab-mcp"}, "a": {"command": "a-mcp"}},
            {"a_b": FakeSession([_tool("c"), _tool("d")]), "a": FakeSession([_tool("b_c")])},
        )
        await manager.connect("a_b")
        await manager.connect("a")
        catalog = ToolCatalog(manager)

        names = [s["function"]["name"] for s in catalog.get_function_specs()]

        self.assertEqual(names, ["a_b_d"])
        self.assertEqual(catalog.resolve_tool("a.b_c").server_id, "a")
        with self.assertRaises(AmbiguousToolError):
            catalog.resolve_tool("a_b_c")


# =============================================================================
# Connection Manager
# =============================================================================

class ConnectionManagerTest(IsolatedAsyncioTestCase):
    """Test the connection state machine."""

    async def asyncSetUp(self):
        self.session = FakeSession([_tool("get_weather", WEATHER_SCHEMA)])
        self.manager, self.transport, self.events = _build_manager(
            {
                "weather": {"command": "python", "args": ["weather.py"]},
                "off": {"command": "python", "disabled": True},
            },
            {"weather": self.session},
        )

    async def test_connect(self):
        received = _record_events(self.events, EventEmitter.SERVER_STATE_CHANGED)

        connection = await self.manager.connect("weather")

        self.assertEqual(connection.state, ConnectionState.CONNECTED)
        self.assertEqual([t.qualified_name for t in connection.tools], ["weather.get_weather"])
        self.assertEqual(connection.protocol_version, "2025-06-18")
        self.assertEqual([p.state for _, p in received], ["connecting", "connected"])

    async def test_connect_is_idempotent(self):
        first = await self.manager.connect("weather")
        second = await self.manager.connect("weather")
        self.assertIs(first, second)
        self.assertEqual(self.transport.open_calls, ["weather"])

    async def test_concurrent_connects_share_one_attempt(self):
        self.transport.delay = 0.05
        first, second = await asyncio.gather(self.manager.connect("weather"), self.manager.connect("weather"))
        self.assertIs(first, second)
        self.assertEqual(self.transport.open_calls, ["weather"])

    async def test_unknown_and_disabled_servers(self):
        with self.assertRaises(ConfigError):
            await self.manager.connect("nope")
        with self.assertRaises(ConfigError):
            await self.manager.connect("off")
        self.assertIsNone(self.manager.get_connection("off"))

    async def test_failed_connect_enters_error_state(self):
        self.transport.failures["weather"] = ServerConnectionError("weather", "handshake failed", "Traceback: boom")

        with self.assertRaises(ServerConnectionError):
            await self.manager.connect("weather")

        connection = self.manager.get_connection("weather")
        self.assertEqual(connection.state, ConnectionState.ERROR)
        self.assertEqual(connection.last_error, "handshake failed")
        self.assertEqual(connection.diagnostics, "Traceback: boom")
        self.assertEqual(connection.reconnect_attempts, 1)

        del self.transport.failures["weather"]
        connection = await self.manager.connect("weather")
        self.assertEqual(connection.state, ConnectionState.CONNECTED)
        self.assertIsNone(connection.last_error)
        self.assertEqual(connection.reconnect_attempts, 0)

    async def test_retry_counter_survives_failed_connects_until_reconnect(self):
        self.transport.failures["weather"] = ServerConnectionError("weather", "handshake failed")
        for _ in range(2):
            with self.assertRaises(ServerConnectionError):
                await self.manager.connect("weather")
        self.assertEqual(self.manager.get_connection("weather").reconnect_attempts, 2)

        with self.assertRaises(ServerConnectionError):
            await self.manager.reconnect("weather")
        self.assertEqual(self.manager.get_connection("weather").reconnect_attempts, 1)

    async def test_spawn_error_is_wrapped(self):
        self.transport.failures["weather"] = FileNotFoundError(2, "No such file or directory")
        with self.assertRaises(ServerConnectionError) as ctx:
            await self.manager.connect("weather")
        self.assertIn("FileNotFoundError", ctx.exception.message)

    async def test_disconnect(self):
        await self.manager.connect("weather")
        handle = self.transport.handles[0]

        self.assertTrue(await self.manager.disconnect("weather"))
        self.assertTrue(handle.closed)
        self.assertIsNone(self.manager.get_connection("weather"))
        self.assertFalse(await self.manager.disconnect("weather"))

    async def test_mark_error_closes_transport(self):
        await self.manager.connect("weather")

        self.assertTrue(await self.manager.mark_error("weather", "ping failed"))

        self.assertTrue(self.transport.handles[0].closed)
        self.assertEqual(self.manager.get_status("weather").state, ConnectionState.ERROR)
        with self.assertRaises(ServerUnavailableError):
            self.manager.get_session("weather")

    async def test_unexpected_process_exit(self):
        await self.manager.connect("weather")
        handle = self.transport.handles[0]

        self.transport.on_exit(handle, RuntimeError("process died"))
        await asyncio.sleep(0.01)

        connection = self.manager.get_connection("weather")
        self.assertEqual(connection.state, ConnectionState.ERROR)
        self.assertIn("process died", connection.last_error)

    async def test_stale_exit_callback_is_ignored(self):
        await self.manager.connect("weather")
        old_handle = self.transport.handles[0]
        await self.manager.reconnect("weather")

        self.transport.on_exit(old_handle, None)
        await asyncio.sleep(0.01)

        self.assertTrue(self.manager.is_connected("weather"))

    async def test_get_all_servers(self):
        await self.manager.connect("weather")
        statuses = {s.server_id: s for s in self.manager.get_all_servers()}
        self.assertEqual(statuses["weather"].state, ConnectionState.CONNECTED)
        self.assertEqual(statuses["weather"].tool_count, 1)
        self.assertEqual(statuses["off"].state, ConnectionState.DISCONNECTED)
        self.assertFalse(statuses["off"].enabled)

    async def test_refresh_tools(self):
        await self.manager.connect("weather")
        self.session.tools.append(_tool("get_forecast"))

        tools = await self.manager.refresh_tools("weather")

        self.assertEqual(len(tools), 2)
        self.assertEqual(len(self.manager.get_connection("weather").tools), 2)

    async def test_shutdown(self):
        await self.manager.connect("weather")
        await self.manager.shutdown()
        self.assertEqual(self.manager.list_connections(), [])


class ReloadConfigTest(IsolatedAsyncioTestCase):
    """Test reload_config against live connections."""

    async def test_reload_disconnects_changed_and_removed_servers(self):
        sessions = {sid: FakeSession([_tool(f"{sid}_tool")]) for sid in ("keep", "change", "remove", "disable")}
        manager, _, _ = _build_manager(
            {sid: {"command": "python"} for sid in sessions},
            sessions,
        )
        for sid in sessions:
            await manager.connect(sid)

        manager.registry.store.write({"mcpServers": {
            "keep": {"command": "python"},
            "change": {"command": "python", "args": ["--verbose"]},
            "disable": {"command": "python", "disabled": True},
            "bad": {"command": ""},
        }})
        result = await manager.reload_config()

        self.assertEqual(sorted(result.disconnected), ["change", "disable", "remove"])
        self.assertIn("bad", result.errors)
        self.assertTrue(manager.is_connected("keep"))
        self.assertIsNone(manager.get_connection("remove"))

    async def test_unreadable_config_raises(self):
        manager, _, _ = _build_manager({}, {})
        manager.registry.store.write({"mcpServers": "nope"})
        with self.assertRaises(ConfigError):
            await manager.reload_config()


# =============================================================================
# Tool Execution Engine
# =============================================================================

class ToolExecutorTest(IsolatedAsyncioTestCase):
    """Test the execution lifecycle."""

    async def asyncSetUp(self):
        self.handler_calls = 0
        self.session = FakeSession(
            [
                _tool("get_weather", WEATHER_SCHEMA),
                _tool("slow"),
                _tool("broken"),
                _tool("crash"),
                _tool("report"),
            ],
            handler=self._handle,
        )
        self.manager, self.transport, self.events = _build_manager(
            {"weather": {"command": "python", "timeout": 5}},
            {"weather": self.session},
        )
        self.executor = ToolExecutor(self.manager)
        await self.manager.connect("weather")

    async def _handle(self, name, arguments):
        if name == "slow":
            await asyncio.sleep(arguments.get("seconds", 1.0))
            return _text_result("slow done")
        if name == "broken":
            return _text_result("sensor offline", is_error=True)
        if name == "crash":
            raise anyio.ClosedResourceError()
        if name == "report":
            await self.session.progress_callback(0.5, 1.0, "halfway")
            return _text_result("report done")
        # Optional delay lets concurrent calls finish out of order
        await asyncio.sleep(arguments.get("delay", 0.0))
        return _text_result(f"Sunny in {arguments['location']}")

    async def _wait_until_running(self, count=1):
        for _ in range(100):
            running = [r for r in self.executor.get_active_executions() if r.status == ExecutionStatus.RUNNING]
            if len(running) >= count:
                return running
            await asyncio.sleep(0.01)
        self.fail("execution never started")

    async def test_successful_execution(self):
        """Scenario A: the weather tool answers."""
        received = _record_events(self.events, EventEmitter.EXECUTION_STARTED, EventEmitter.EXECUTION_COMPLETED)

        record = await self.executor.execute("get_weather", {"location": "Paris"}, session_id="chat-1")

        self.assertEqual(record.status, ExecutionStatus.COMPLETED)
        self.assertEqual(record.result.text, "Sunny in Paris")
        self.assertEqual(record.server_id, "weather")
        self.assertEqual([s for s, _ in record.status_history], ["pending", "running", "completed"])
        self.assertEqual(self.executor.get_active_executions(), [])
        self.assertEqual(self.executor.get_history(), [record])
        self.assertEqual([name for name, _ in received], [EventEmitter.EXECUTION_STARTED, EventEmitter.EXECUTION_COMPLETED])
        self.assertEqual(received[1][1].invocation_id, record.id)

    async def test_concurrent_calls_keep_their_own_results(self):
        """Scenario B: two calls on one server with different arguments."""
        nyc, la = await asyncio.gather(
            self.executor.execute("get_weather", {"location": "NYC", "delay": 0.05}),
            self.executor.execute("get_weather", {"location": "LA"}),
        )

        self.assertNotEqual(nyc.id, la.id)
        self.assertEqual(nyc.status, ExecutionStatus.COMPLETED)
        self.assertEqual(la.status, ExecutionStatus.COMPLETED)
        self.assertEqual(nyc.result.text, "Sunny in NYC")
        self.assertEqual(la.result.text, "Sunny in LA")
        self.assertEqual(self.executor.get_history(), [nyc, la])

    async def test_unresolvable_tool_creates_no_record(self):
        received = _record_events(self.events, EventEmitter.EXECUTION_STARTED)

        with self.assertRaises(ToolNotFoundError):
            await self.executor.execute("missing_tool", {})

        self.assertEqual(self.executor.get_history(), [])
        self.assertEqual(self.executor.get_active_executions(), [])
        self.assertEqual(received, [])

    async def test_tool_reported_error(self):
        record = await self.executor.execute("weather.broken", {})
        self.assertEqual(record.status, ExecutionStatus.FAILED)
        self.assertEqual(record.error, "sensor offline")
        self.assertEqual(record.error_type, "ToolError")
        self.assertTrue(self.manager.is_connected("weather"))

    async def test_invalid_arguments_are_not_dispatched(self):
        record = await self.executor.execute("get_weather", {"location": 42})
        self.assertEqual(record.status, ExecutionStatus.FAILED)
        self.assertEqual(record.error_type, "InvalidArguments")
        self.assertIn("$.location", record.error)
        self.assertEqual(self.session.calls, [])

    async def test_validation_can_be_disabled(self):
        self.executor.settings = _test_settings(validate_arguments=False)
        record = await self.executor.execute("get_weather", {"location": 7})
        self.assertEqual(record.status, ExecutionStatus.COMPLETED)

    async def test_timeout_abandons_call(self):
        """A call that outlives its timeout fails; the server stays up."""
        record = await self.executor.execute("slow", {"seconds": 1.0}, timeout=0.05)

        self.assertEqual(record.status, ExecutionStatus.FAILED)
        self.assertEqual(record.error_type, "ExecutionTimeout")
        self.assertEqual(record.error, "Tool execution timeout after 0.05s")
        self.assertTrue(self.manager.is_connected("weather"))
        self.assertFalse(self.transport.handles[0].closed)

    async def test_timeout_defaults_and_cap(self):
        descriptor = self.executor.catalog.resolve_tool("slow")
        self.assertEqual(self.executor._resolve_timeout(descriptor, None), 5.0)
        self.assertEqual(self.executor._resolve_timeout(descriptor, 10_000), 300.0)

    async def test_cancel_running_execution(self):
        """Cancel while the tool is running; siblings are unaffected."""
        received = _record_events(self.events, EventEmitter.EXECUTION_CANCELLED, EventEmitter.EXECUTION_COMPLETED)
        slow = asyncio.create_task(self.executor.execute("slow", {"seconds": 5.0}, session_id="chat-1"))
        sibling = asyncio.create_task(self.executor.execute("slow", {"seconds": 0.05}, session_id="chat-2"))
        running = await self._wait_until_running(2)
        target = next(r for r in running if r.session_id == "chat-1")

        self.assertTrue(self.executor.cancel(target.id))
        self.assertFalse(self.executor.cancel(target.id))

        record = await slow
        sibling_record = await sibling
        self.assertEqual(record.status, ExecutionStatus.CANCELLED)
        self.assertEqual(record.error_type, "CancellationRequested")
        self.assertEqual(sibling_record.status, ExecutionStatus.COMPLETED)
        self.assertEqual([name for name, _ in received].count(EventEmitter.EXECUTION_CANCELLED), 1)
        self.assertTrue(self.manager.is_connected("weather"))

    async def test_cancel_shortly_after_start(self):
        """Scenario D: cancel 10ms into a slow call."""
        received = _record_events(self.events, EventEmitter.EXECUTION_COMPLETED)
        task = asyncio.create_task(self.executor.execute("slow", {"seconds": 1.0}))
        await asyncio.sleep(0.01)
        active = self.executor.get_active_executions()
        self.assertEqual(len(active), 1)

        self.assertTrue(self.executor.cancel(active[0].id))
        record = await task

        self.assertEqual(record.status, ExecutionStatus.CANCELLED)
        self.assertEqual([r.status for r in self.executor.get_history() if r.id == record.id], [ExecutionStatus.CANCELLED])
        self.assertNotIn("completed", [s for s, _ in record.status_history])
        self.assertEqual(received, [])

    async def test_cancel_after_completion_is_noop(self):
        record = await self.executor.execute("get_weather", {"location": "Rome"})
        self.assertFalse(self.executor.cancel(record.id))
        self.assertFalse(self.executor.cancel("unknown-id"))
        self.assertEqual(record.status, ExecutionStatus.COMPLETED)

    async def test_caller_cancellation_records_cancelled(self):
        task = asyncio.create_task(self.executor.execute("slow", {"seconds": 5.0}))
        running = await self._wait_until_running()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.executor.get_execution(running[0].id).status, ExecutionStatus.CANCELLED)
        self.assertEqual(self.executor.get_active_executions(), [])

    async def test_transport_failure_marks_server_error(self):
        record = await self.executor.execute("crash", {})
        self.assertEqual(record.status, ExecutionStatus.FAILED)
        self.assertEqual(record.error_type, "ConnectionError")
        self.assertEqual(self.manager.get_connection("weather").state, ConnectionState.ERROR)

    async def test_caller_cancelled_while_server_is_downgraded(self):
        self.transport.handles[0].close_delay = 0.5
        task = asyncio.create_task(self.executor.execute("crash", {}))
        await asyncio.sleep(0.1)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        connection = self.manager.get_connection("weather")
        self.assertEqual(connection.state, ConnectionState.ERROR)
        self.assertFalse(connection.is_live)
        for _ in range(100):
            if self.transport.handles[0].closed:
                break
            await asyncio.sleep(0.01)
        self.assertTrue(self.transport.handles[0].closed)

        result = await HealthMonitor(self.manager).auto_connect_all()
        self.assertEqual(result.connected, ["weather"])
        self.assertTrue(self.manager.is_connected("weather"))

    async def test_protocol_errors_are_classified(self):
        async def reject(name, arguments):
            raise McpError(ErrorData(code=INVALID_PARAMS, message="Unknown tool: get_weather"))

        self.session.handler = reject
        record = await self.executor.execute("get_weather", {"location": "Oslo"})

        self.assertEqual(record.error_type, "ProtocolError")
        self.assertTrue(self.manager.is_connected("weather"))

    async def test_closed_connection_error_downgrades_server(self):
        async def closed(name, arguments):
            raise McpError(ErrorData(code=CONNECTION_CLOSED, message="Connection closed"))

        self.session.handler = closed
        record = await self.executor.execute("get_weather", {"location": "Oslo"})

        self.assertEqual(record.error_type, "ConnectionError")
        self.assertEqual(self.manager.get_connection("weather").state, ConnectionState.ERROR)

    async def test_progress_notifications_are_forwarded(self):
        received = _record_events(self.events, EventEmitter.EXECUTION_PROGRESS)

        record = await self.executor.execute("report", {})

        self.assertEqual(record.status, ExecutionStatus.COMPLETED)
        self.assertEqual(record.progress, {"progress": 0.5, "total": 1.0, "message": "halfway"})
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0][1].status, "running")
        self.assertEqual(received[0][1].progress["message"], "halfway")

    async def test_slow_call_warning(self):
        self.executor.settings = _test_settings(slow_tool_warning=0.02)
        received = _record_events(self.events, EventEmitter.EXECUTION_PROGRESS)

        await self.executor.execute("get_weather", {"location": "Bern"})
        self.assertEqual(received, [])

        record = await self.executor.execute("slow", {"seconds": 0.1})

        self.assertEqual(record.status, ExecutionStatus.COMPLETED)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0][1].invocation_id, record.id)
        self.assertIn("longer than expected", received[0][1].progress["message"])

    async def test_server_unavailable_at_dispatch(self):
        with patch.object(self.manager, "get_session", side_effect=ServerUnavailableError("weather")):
            record = await self.executor.execute("get_weather", {"location": "Lima"})
        self.assertEqual(record.status, ExecutionStatus.FAILED)
        self.assertEqual(record.error_type, "ServerUnavailable")

    async def test_concurrency_limit_per_server(self):
        manager, _, _ = _build_manager(
            {"one": {"command": "python", "maxConcurrency": 1}},
            {"one": FakeSession([_tool("slow")], handler=self._track_concurrency)},
        )
        await manager.connect("one")
        executor = ToolExecutor(manager)
        self.in_flight = self.peak = 0

        records = await asyncio.gather(*(executor.execute("slow", {}) for _ in range(3)))

        self.assertEqual(self.peak, 1)
        self.assertTrue(all(r.status == ExecutionStatus.COMPLETED for r in records))

    async def _track_concurrency(self, name, arguments):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return _text_result("done")

    async def test_statistics(self):
        await self.executor.execute("get_weather", {"location": "A"}, session_id="s1")
        await self.executor.execute("get_weather", {"location": "B"}, session_id="s1")
        await self.executor.execute("broken", {}, session_id="s2")

        stats = self.executor.get_statistics()

        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["succeeded"], 2)
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["cancelled"], 0)
        self.assertAlmostEqual(stats["average_execution_time_ms"], stats["total_execution_time_ms"] / 3)
        self.assertEqual(stats["tool_breakdown"]["weather.get_weather"]["succeeded"], 2)
        self.assertEqual(self.executor.get_statistics(session_id="s2")["total"], 1)

    async def test_empty_statistics(self):
        stats = self.executor.get_statistics()
        self.assertEqual(stats["total"], 0)
        self.assertEqual(stats["average_execution_time_ms"], 0.0)

    async def test_history_order_filter_and_limit(self):
        first = await self.executor.execute("get_weather", {"location": "A"}, session_id="s1")
        second = await self.executor.execute("get_weather", {"location": "B"}, session_id="s2")
        third = await self.executor.execute("get_weather", {"location": "C"}, session_id="s1")

        self.assertEqual(self.executor.get_history(), [third, second, first])
        self.assertEqual(self.executor.get_history(session_id="s1"), [third, first])
        self.assertEqual(self.executor.get_history(limit=1), [third])
        self.assertIs(self.executor.get_execution(second.id), second)

    async def test_prune_history(self):
        old = await self.executor.execute("get_weather", {"location": "A"})
        new = await self.executor.execute("get_weather", {"location": "B"})
        old.ended_at = time.time() - 3600

        self.assertEqual(self.executor.prune_history(60), 1)
        self.assertEqual(self.executor.get_history(), [new])
        self.assertEqual(self.executor.prune_history(60), 0)

    async def test_prune_never_touches_active_records(self):
        """Scenario E: prune_history(0) empties history and spares running records."""
        await self.executor.execute("get_weather", {"location": "A"})
        await self.executor.execute("broken", {})
        task = asyncio.create_task(self.executor.execute("slow", {"seconds": 0.2}))
        running = await self._wait_until_running()

        self.assertEqual(self.executor.prune_history(0), 2)

        self.assertEqual(self.executor.get_history(), [])
        self.assertEqual(self.executor.get_active_executions(), running)
        self.assertEqual(running[0].status, ExecutionStatus.RUNNING)
        record = await task
        self.assertEqual(record.status, ExecutionStatus.COMPLETED)

    async def test_history_is_bounded(self):
        self.executor = ToolExecutor(self.manager, settings=_test_settings(max_history=2))
        for location in ("A", "B", "C"):
            await self.executor.execute("get_weather", {"location": location})
        history = self.executor.get_history()
        self.assertEqual([r.invocation.arguments["location"] for r in history], ["C", "B"])

    async def test_clear_history_by_session(self):
        await self.executor.execute("get_weather", {"location": "A"}, session_id="s1")
        await self.executor.execute("get_weather", {"location": "B"}, session_id="s2")
        self.assertEqual(self.executor.clear_history("s1"), 1)
        self.assertEqual(len(self.executor.get_history()), 1)

    async def test_failing_event_handler_does_not_affect_execution(self):
        def explode(payload):
            raise RuntimeError("listener bug")

        self.events.on(EventEmitter.EXECUTION_COMPLETED, explode)
        record = await self.executor.execute("get_weather", {"location": "Quito"})
        self.assertEqual(record.status, ExecutionStatus.COMPLETED)


class ExecutionRecordTest(TestCase):
    """Test status transitions of a single record."""

    def _record(self):
        return ExecutionRecord(
            invocation=ToolInvocation(tool_name="get_weather"),
            server_id="weather",
            resolved_name="get_weather",
            timeout=30.0,
        )

    def test_terminal_states_are_final(self):
        record = self._record()
        record.transition(ExecutionStatus.RUNNING)
        record.transition(ExecutionStatus.COMPLETED)
        with self.assertRaises(ValueError):
            record.transition(ExecutionStatus.FAILED)

    def test_pending_may_fail_directly(self):
        record = self._record()
        record.transition(ExecutionStatus.FAILED)
        self.assertEqual(record.duration_ms, 0.0)

    def test_running_cannot_go_back_to_pending(self):
        record = self._record()
        record.transition(ExecutionStatus.RUNNING)
        with self.assertRaises(ValueError):
            record.transition(ExecutionStatus.PENDING)


# =============================================================================
# Health Monitor
# =============================================================================

class HealthMonitorTest(IsolatedAsyncioTestCase):
    """Test probes, auto-connect and backoff."""

    async def asyncSetUp(self):
        self.sessions = {
            "weather": FakeSession([_tool("get_weather", WEATHER_SCHEMA)]),
            "files": FakeSession([_tool("read_file")]),
        }
        self.manager, self.transport, _ = _build_manager(
            {"weather": {"command": "python"}, "files": {"command": "npx"}},
            self.sessions,
        )
        self.monitor = HealthMonitor(self.manager)

    async def test_healthy_probe(self):
        await self.manager.connect("weather")
        self.manager.get_connection("weather").last_health_check = None

        result = await self.monitor.check_server_health("weather")

        self.assertEqual(result.status, HealthStatus.HEALTHY)
        self.assertEqual(result.tool_count, 1)
        self.assertIsNotNone(self.manager.get_connection("weather").last_health_check)

    async def test_failed_probe_downgrades_server(self):
        await self.manager.connect("weather")
        self.sessions["weather"].ping_error = anyio.BrokenResourceError()

        result = await self.monitor.check_server_health("weather")

        self.assertEqual(result.status, HealthStatus.UNHEALTHY)
        self.assertEqual(self.manager.get_connection("weather").state, ConnectionState.ERROR)

    async def test_slow_probe_times_out(self):
        await self.manager.connect("weather")
        self.sessions["weather"].ping_delay = 1.0

        result = await self.monitor.check_server_health("weather")

        self.assertEqual(result.status, HealthStatus.UNHEALTHY)
        self.assertIn("timed out", result.error)

    async def test_concurrent_probes_share_one_ping(self):
        await self.manager.connect("weather")
        self.sessions["weather"].ping_delay = 0.05

        results = await asyncio.gather(*(self.monitor.check_server_health("weather") for _ in range(3)))

        self.assertEqual(self.sessions["weather"].pings, 1)
        self.assertTrue(all(r.healthy for r in results))

    async def test_unknown_and_disconnected_servers(self):
        with self.assertRaises(ConfigError):
            await self.monitor.check_server_health("nope")
        result = await self.monitor.check_server_health("files")
        self.assertEqual(result.status, HealthStatus.UNHEALTHY)

    async def test_stale_tools_are_refreshed(self):
        await self.manager.connect("weather")
        self.manager.get_connection("weather").tools_fetched_at = time.time() - 3600

        await self.monitor.check_server_health("weather")

        self.assertEqual(self.sessions["weather"].list_calls, 2)

    async def test_perform_health_check(self):
        await self.manager.connect("weather")
        await self.manager.connect("files")
        self.sessions["files"].ping_error = RuntimeError("gone")

        summary = await self.monitor.perform_health_check()

        self.assertEqual(summary.total_servers, 2)
        self.assertEqual(summary.connected_servers, 1)
        self.assertEqual(len(summary.results), 2)

    async def test_auto_connect_isolates_failures(self):
        """One failing server does not stop the others."""
        self.transport.failures["files"] = ServerConnectionError("files", "spawn failed")

        result = await self.monitor.auto_connect_all()

        self.assertEqual(result.connected, ["weather"])
        self.assertEqual(result.failed, {"files": "spawn failed"})
        self.assertTrue(self.manager.is_connected("weather"))
        self.assertEqual(self.manager.get_connection("files").state, ConnectionState.ERROR)

    async def test_backoff_skips_recent_failures(self):
        self.transport.failures["files"] = ServerConnectionError("files", "spawn failed")
        await self.monitor.auto_connect_all()

        result = await self.monitor.auto_connect_all(respect_backoff=True)

        self.assertEqual(result.skipped, ["files"])
        self.assertEqual(self.transport.open_calls.count("files"), 1)

        connection = self.manager.get_connection("files")
        connection.last_attempt_at = time.time() - 10
        del self.transport.failures["files"]
        result = await self.monitor.auto_connect_all(respect_backoff=True)
        self.assertEqual(result.connected, ["files"])

    async def test_backoff_gives_up_after_max_attempts(self):
        self.transport.failures["files"] = ServerConnectionError("files", "spawn failed")
        await self.monitor.auto_connect_all()
        connection = self.manager.get_connection("files")
        connection.reconnect_attempts = self.manager.settings.max_reconnect_attempts
        connection.last_attempt_at = 0

        result = await self.monitor.auto_connect_all(respect_backoff=True)

        self.assertIn("files", result.skipped)

    async def test_health_of(self):
        self.assertEqual(self.monitor.health_of(None), HealthStatus.UNHEALTHY)
        connection = await self.manager.connect("weather")
        self.assertEqual(self.monitor.health_of(connection), HealthStatus.HEALTHY)
        connection.last_health_check = time.time() - 3600
        self.assertEqual(self.monitor.health_of(connection), HealthStatus.UNKNOWN)

    async def test_background_loop_reconnects(self):
        self.monitor.settings = _test_settings(health_check_interval=0.01, reconnect_delay=0.0)
        self.monitor.start()
        try:
            for _ in range(100):
                if self.manager.is_connected("weather") and self.manager.is_connected("files"):
                    break
                await asyncio.sleep(0.01)
        finally:
            await self.monitor.stop()
        self.assertTrue(self.manager.is_connected("weather"))
        self.assertFalse(self.monitor.running)


# =============================================================================
# Core facade
# =============================================================================

class MCPCoreTest(IsolatedAsyncioTestCase):
    """Test consumer-facing operations."""

    async def asyncSetUp(self):
        self.store = MemoryConfigStore({"mcpServers": {"weather": {"command": "python"}}})
        self.transport = FakeTransport({
            "weather": FakeSession([_tool("get_weather", WEATHER_SCHEMA)]),
            "files": FakeSession([_tool("read_file")]),
        })
        self.core = MCPCore(self.store, settings=_test_settings(), transport=self.transport)
        outcome = await self.core.start(monitor=False)
        self.assertTrue(outcome.success)

    async def asyncTearDown(self):
        await self.core.shutdown()

    async def test_start_connects_enabled_servers(self):
        servers = self.core.list_servers().data
        self.assertEqual([(s.server_id, s.state, s.health) for s in servers], [("weather", ConnectionState.CONNECTED, "healthy")])

    async def test_execute_outcomes(self):
        good = await self.core.execute("weather.get_weather", {"location": "Paris"}, session_id="chat")
        missing = await self.core.execute("nope", {})

        self.assertTrue(good.success)
        self.assertEqual(good.data.status, ExecutionStatus.COMPLETED)
        self.assertFalse(missing.success)
        self.assertEqual(missing.error_type, "ToolNotFound")
        self.assertEqual(self.core.get_history("chat").data, [good.data])
        self.assertEqual(self.core.get_statistics().data["total"], 1)

    async def test_server_management(self):
        added = await self.core.add_server("files", "npx", args=["fs-mcp"])
        duplicate = await self.core.add_server("files", "npx")
        self.assertTrue(added.success)
        self.assertEqual(duplicate.error_type, "ConfigError")
        self.assertIn("files", self.store.data["mcpServers"])

        connected = await self.core.connect("files")
        self.assertTrue(connected.success)

        toggled = await self.core.toggle_server("files", False)
        self.assertTrue(toggled.success)
        self.assertFalse(self.core.connections.is_connected("files"))
        self.assertTrue(self.store.data["mcpServers"]["files"]["disabled"])

        removed = await self.core.remove_server("files")
        self.assertTrue(removed.success)
        self.assertNotIn("files", self.store.data["mcpServers"])
        self.assertEqual((await self.core.remove_server("files")).error_type, "ConfigError")

    async def test_update_server_disconnects_on_change(self):
        updated = await self.core.update_server("weather", args=["--metric"])
        self.assertTrue(updated.success)
        self.assertFalse(self.core.connections.is_connected("weather"))
        self.assertEqual((await self.core.update_server("weather", colour="blue")).error_type, "ConfigError")

    async def test_connect_unknown_server(self):
        outcome = await self.core.connect("nope")
        self.assertEqual(outcome.error_type, "ConfigError")

    async def test_tools_and_function_specs(self):
        tools = self.core.get_all_enabled_tools().data
        self.assertEqual([t.name for t in tools["weather"]], ["get_weather"])
        self.assertEqual(self.core.get_function_specs().data[0]["function"]["name"], "weather_get_weather")

    async def test_check_health(self):
        single = await self.core.check_health("weather")
        summary = await self.core.check_health()
        self.assertTrue(single.data.healthy)
        self.assertEqual(summary.data.connected_servers, 1)

    async def test_outcome_serialization(self):
        outcome = await self.core.execute("get_weather", {"location": "Paris"})
        data = outcome.to_dict()
        self.assertEqual(data["data"]["status"], "completed")
        self.assertEqual(data["data"]["result"]["content"][0]["text"], "get_weather ok")


# =============================================================================
# End-to-end (spawns real stdio servers)
# =============================================================================

@skipIf(_process_tests_disabled(), "Subprocess tests disabled")
class StdioEndToEndTest(IsolatedAsyncioTestCase):
    """Scenarios A, B and C against a real FastMCP server process."""

    async def asyncSetUp(self):
        self.store = MemoryConfigStore({"mcpServers": {
            "weather": {"command": sys.executable, "args": [str(FIXTURE_SERVER)]},
            "missing": {"command": "chatbridge-no-such-mcp-server"},
            "crashing": {
                "command": sys.executable,
                "args": ["-c", "import sys; sys.stderr.write('boom: missing API key\\n'); sys.exit(3)"],
            },
        }})
        self.core = MCPCore(self.store, settings=_test_settings(connect_timeout=20.0, close_timeout=5.0, health_check_timeout=5.0))
        await self.core.start(auto_connect=False, monitor=False)

    async def asyncTearDown(self):
        await self.core.shutdown()

    async def test_weather_round_trip(self):
        """Scenario A."""
        connected = await self.core.connect("weather")
        self.assertTrue(connected.success, connected.error)
        self.assertIn("weather.get_weather", [t.qualified_name for t in connected.data.tools])

        outcome = await self.core.execute("get_weather", {"location": "Paris"})

        self.assertEqual(outcome.data.status, ExecutionStatus.COMPLETED)
        self.assertIn("Paris", outcome.data.result.text)

    async def test_concurrent_calls(self):
        """Scenario B."""
        await self.core.connect("weather")

        nyc, la = await asyncio.gather(
            self.core.execute("get_weather", {"location": "NYC"}),
            self.core.execute("get_weather", {"location": "LA"}),
        )

        self.assertEqual(nyc.data.result.text, "Sunny, 21C in NYC")
        self.assertEqual(la.data.result.text, "Sunny, 21C in LA")

    async def test_second_open_of_a_live_server_is_refused(self):
        await self.core.connect("weather")
        transport = self.core.connections._transport
        self.assertTrue(transport.is_connected("weather"))

        with self.assertRaises(ServerConnectionError):
            await transport.open("weather", sys.executable, [str(FIXTURE_SERVER)])

    async def test_tool_error_and_timeout_keep_server_alive(self):
        await self.core.connect("weather")

        broken = await self.core.execute("broken_sensor", {})
        slow = await self.core.execute("slow_forecast", {"seconds": 5.0}, timeout=0.2)
        health = await self.core.check_health("weather")

        self.assertEqual(broken.data.status, ExecutionStatus.FAILED)
        self.assertEqual(slow.data.error_type, "ExecutionTimeout")
        self.assertTrue(health.data.healthy)

    async def test_missing_command(self):
        """Scenario C."""
        outcome = await self.core.connect("missing")

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_type, "ConnectionError")
        status = self.core.connections.get_status("missing")
        self.assertEqual(status.state, ConnectionState.ERROR)
        self.assertTrue(status.last_error)

    async def test_crashing_server_reports_stderr(self):
        self.core.settings.connect_timeout = 5.0
        outcome = await self.core.connect("crashing")

        self.assertFalse(outcome.success)
        self.assertIn("boom: missing API key", self.core.connections.get_status("crashing").diagnostics)
