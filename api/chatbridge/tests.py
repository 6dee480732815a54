"""
Core building block tests: settings, events, server registry, errors and outcomes.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import MagicMock, patch

from chatbridge.config import Settings, _load_settings_with_overrides, save_settings_overrides
from chatbridge.events import EventEmitter, ExecutionEventPayload, ServerStateChangedPayload
from chatbridge.mcp.errors import (
    AmbiguousToolError,
    ConfigError,
    ExecutionTimeoutError,
    InvalidArgumentsError,
    ServerConnectionError,
    ToolNotFoundError,
    describe_error,
)
from chatbridge.mcp.server_registry import JSONConfigStore, MemoryConfigStore, ServerConfig, ServerRegistry
from chatbridge.utils.responses import Outcome, fail, ok, returns_outcome


# =============================================================================
# Settings
# =============================================================================

class SettingsTest(TestCase):
    """Test settings defaults, environment variables and the overrides file."""

    def test_defaults(self):
        settings = Settings()
        self.assertEqual(settings.default_tool_timeout, 30.0)
        self.assertEqual(settings.max_history, 1000)
        self.assertTrue(settings.validate_arguments)

    def test_env_prefix(self):
        """CHATBRIDGE_* environment variables override defaults."""
        with patch.dict(os.environ, {"CHATBRIDGE_CONNECT_TIMEOUT": "3.5", "CHATBRIDGE_AUTO_RECONNECT": "false"}):
            settings = Settings()
        self.assertEqual(settings.connect_timeout, 3.5)
        self.assertFalse(settings.auto_reconnect)

    def test_overrides_file_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "data" / "settings.json"
            save_settings_overrides({"max_history": 10}, path=path)
            save_settings_overrides({"health_check_interval": 5.0}, path=path)

            settings = _load_settings_with_overrides(path=path)

            self.assertEqual(settings.max_history, 10)
            self.assertEqual(settings.health_check_interval, 5.0)

    def test_corrupt_overrides_file_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.json"
            path.write_text("{not json")
            settings = _load_settings_with_overrides(path=path)
            self.assertEqual(settings.max_history, 1000)


# =============================================================================
# Events
# =============================================================================

class EventEmitterTest(TestCase):
    """Test the observer list."""

    def test_emit_calls_current_subscribers(self):
        events = EventEmitter()
        received = []
        unsubscribe = events.on(EventEmitter.EXECUTION_COMPLETED, received.append)

        payload = ExecutionEventPayload(event_name=EventEmitter.EXECUTION_COMPLETED, invocation_id="abc")
        self.assertEqual(events.emit(EventEmitter.EXECUTION_COMPLETED, payload), 1)
        unsubscribe()
        self.assertEqual(events.emit(EventEmitter.EXECUTION_COMPLETED, payload), 0)

        self.assertEqual(received, [payload])

    def test_handler_error_is_contained(self):
        """A failing handler does not stop the others."""
        events = EventEmitter()
        received = []
        events.on(EventEmitter.SERVER_STATE_CHANGED, MagicMock(side_effect=RuntimeError("boom")))
        events.on(EventEmitter.SERVER_STATE_CHANGED, received.append)

        called = events.emit(
            EventEmitter.SERVER_STATE_CHANGED,
            ServerStateChangedPayload(event_name=EventEmitter.SERVER_STATE_CHANGED, server_id="weather"),
        )

        self.assertEqual(called, 1)
        self.assertEqual(len(received), 1)

    def test_disable(self):
        events = EventEmitter()
        handler = MagicMock()
        events.on("x", handler)
        events.disable()
        events.emit("x")
        handler.assert_not_called()
        events.enable()
        events.emit("x")
        handler.assert_called_once()

    def test_handler_count_and_clear(self):
        events = EventEmitter()
        events.on("a", MagicMock())
        events.on("b", MagicMock())
        self.assertEqual(events.handler_count(), 2)
        events.clear("a")
        self.assertEqual(events.handler_count("a"), 0)
        events.clear()
        self.assertEqual(events.handler_count(), 0)


class AsyncEventHandlerTest(IsolatedAsyncioTestCase):

    async def test_async_handler_is_scheduled(self):
        events = EventEmitter()
        received = []

        async def handler(payload):
            received.append(payload)

        events.on("x", handler)
        events.emit("x", "payload")
        await asyncio.sleep(0)

        self.assertEqual(received, ["payload"])


# =============================================================================
# Server Registry
# =============================================================================

class ServerConfigTest(TestCase):
    """Test parsing of stored server entries."""

    def test_from_dict(self):
        config = ServerConfig.from_dict("weather", {
            "command": "python",
            "args": ["weather.py"],
            "env": {"UNITS": "metric"},
            "maxConcurrency": 2,
            "timeout": 10,
        })
        self.assertEqual(config.id, "weather")
        self.assertEqual(config.name, "weather")
        self.assertTrue(config.enabled)
        self.assertEqual(config.max_concurrency, 2)
        self.assertEqual(config.timeout, 10.0)

    def test_disabled_flag(self):
        config = ServerConfig.from_dict("weather", {"command": "python", "disabled": True})
        self.assertFalse(config.enabled)

    def test_missing_command_raises(self):
        with self.assertRaises(ConfigError):
            ServerConfig.from_dict("weather", {"args": []})

    def test_non_positive_timeout_raises(self):
        with self.assertRaises(ConfigError):
            ServerConfig.from_dict("weather", {"command": "python", "timeout": 0})

    def test_entry_must_be_mapping(self):
        with self.assertRaises(ConfigError):
            ServerConfig.from_dict("weather", ["python"])

    def test_resolve_env(self):
        config = ServerConfig(id="gh", command="gh-mcp", env={"TOKEN": "${CHATBRIDGE_TEST_TOKEN}", "MODE": "ro"})
        with patch.dict(os.environ, {"CHATBRIDGE_TEST_TOKEN": "secret"}):
            self.assertEqual(config.resolve_env(), {"TOKEN": "secret", "MODE": "ro"})

    def test_resolve_env_missing_variable_is_empty(self):
        config = ServerConfig(id="gh", command="gh-mcp", env={"TOKEN": "${CHATBRIDGE_UNSET_VARIABLE}"})
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("CHATBRIDGE_UNSET_VARIABLE", None)
            self.assertEqual(config.resolve_env(), {"TOKEN": ""})

    def test_to_dict_round_trip(self):
        config = ServerConfig(id="weather", command="python", args=["w.py"], name="Weather", max_concurrency=3)
        self.assertEqual(ServerConfig.from_dict("weather", config.to_dict()), config)


class ServerRegistryTest(TestCase):
    """Test loading and editing the registry."""

    def _store(self):
        return MemoryConfigStore({"mcpServers": {
            "weather": {"command": "python", "args": ["weather.py"]},
            "files": {"command": "npx", "disabled": True},
            "broken": {"args": ["no-command"]},
        }})

    def test_load_skips_malformed_entries(self):
        registry = ServerRegistry(self._store(), load=True)

        self.assertEqual(sorted(registry.list_names()), ["files", "weather"])
        self.assertIn("broken", registry.load_errors)
        self.assertEqual([c.id for c in registry.list_enabled()], ["weather"])

    def test_save_preserves_malformed_entries(self):
        store = self._store()
        registry = ServerRegistry(store, load=True)
        registry.set_enabled("files", True)
        registry.save()

        self.assertEqual(store.data["mcpServers"]["broken"], {"args": ["no-command"]})
        self.assertFalse(store.data["mcpServers"]["files"]["disabled"])
        self.assertEqual(store.writes, 1)

    def test_non_mapping_root_is_total_failure(self):
        store = MemoryConfigStore()
        store.data = {"mcpServers": ["weather"]}
        with self.assertRaises(ConfigError):
            ServerRegistry(store, load=True)

    def test_add_duplicate_raises(self):
        registry = ServerRegistry(self._store(), load=True)
        with self.assertRaises(ConfigError):
            registry.add(ServerConfig(id="weather", command="python"))

    def test_update_unknown_raises(self):
        registry = ServerRegistry(self._store(), load=True)
        with self.assertRaises(ConfigError):
            registry.update(ServerConfig(id="nope", command="python"))

    def test_unregister(self):
        registry = ServerRegistry(self._store(), load=True)
        self.assertTrue(registry.unregister("weather"))
        self.assertFalse(registry.unregister("weather"))
        self.assertIsNone(registry.get("weather"))


class JSONConfigStoreTest(TestCase):

    def test_missing_file_means_no_servers(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = JSONConfigStore(Path(tmp) / "missing.json")
            self.assertEqual(store.read(), {"mcpServers": {}})

    def test_invalid_json_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "servers.json"
            path.write_text("{")
            with self.assertRaises(ConfigError):
                JSONConfigStore(path).read()

    def test_write_then_read(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "servers.json"
            store = JSONConfigStore(path)
            registry = ServerRegistry(store)
            registry.add(ServerConfig(id="weather", command="python", args=["w.py"]))
            registry.save()

            self.assertEqual(json.loads(path.read_text())["mcpServers"]["weather"]["command"], "python")
            self.assertEqual(ServerRegistry(store, load=True).list_names(), ["weather"])
            self.assertEqual(list(Path(tmp, "nested").glob(".mcp-*")), [])


# =============================================================================
# Errors and outcomes
# =============================================================================

class ErrorTest(TestCase):

    def test_error_types(self):
        self.assertEqual(ToolNotFoundError("x").error_type, "ToolNotFound")
        self.assertEqual(ExecutionTimeoutError("x", 0.5).message, "Tool execution timeout after 0.5s")
        self.assertEqual(AmbiguousToolError("search", ["b.search", "a.search"]).candidates, ["a.search", "b.search"])

    def test_connection_error_to_dict(self):
        data = ServerConnectionError("weather", "spawn failed", diagnostics="boom").to_dict()
        self.assertEqual(data["error_type"], "ConnectionError")
        self.assertEqual(data["diagnostics"], "boom")

    def test_invalid_arguments_message(self):
        error = InvalidArgumentsError("weather.get_weather", [{"path": "$", "message": "'location' is a required property"}])
        self.assertIn("'location' is a required property", error.message)

    def test_describe_error_flattens_groups(self):
        group = ExceptionGroup("unhandled errors in a TaskGroup", [
            FileNotFoundError(2, "No such file or directory"),
            ExceptionGroup("inner", [RuntimeError("closed")]),
        ])
        self.assertEqual(
            describe_error(group),
            "FileNotFoundError: [Errno 2] No such file or directory; closed",
        )

    def test_describe_error_without_message(self):
        self.assertEqual(describe_error(TimeoutError()), "TimeoutError")


class OutcomeTest(IsolatedAsyncioTestCase):

    async def test_returns_outcome_wraps_values_and_core_errors(self):
        @returns_outcome
        async def succeed():
            return {"value": 1}

        @returns_outcome
        async def not_found():
            raise AmbiguousToolError("search", ["a.search", "b.search"])

        good = await succeed()
        bad = await not_found()

        self.assertEqual(good, Outcome(success=True, data={"value": 1}))
        self.assertFalse(bad.success)
        self.assertEqual(bad.error_type, "AmbiguousTool")
        self.assertEqual(bad.to_dict()["candidates"], ["a.search", "b.search"])

    async def test_unexpected_errors_propagate(self):
        @returns_outcome
        async def explode():
            raise RuntimeError("bug")

        with self.assertRaises(RuntimeError):
            await explode()

    async def test_to_dict_serializes_nested_objects(self):
        config = ServerConfig(id="weather", command="python")
        self.assertEqual(ok([config]).to_dict()["data"][0]["command"], "python")
        self.assertEqual(fail("nope", "ConfigError").to_dict(), {"success": False, "error": "nope", "error_type": "ConfigError"})
