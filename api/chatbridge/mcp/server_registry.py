"""
Server Registry: Configuration and tracking of MCP servers.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError

logger = logging.getLogger(__name__)


class ServerEntry(BaseModel):
    """One entry of the "mcpServers" mapping as stored on disk."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    name: Optional[str] = None
    description: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=5, gt=0, alias="maxConcurrency")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for an MCP server."""

    id: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    name: str = ""
    description: str | None = None

    # Default timeout for one tool call, in seconds
    timeout: float = 30.0
    max_concurrency: int = 5

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def validate(self) -> bool:
        """Validate the server configuration."""
        if not self.id or not self.id.strip():
            raise ConfigError("Server id must not be empty")
        if not self.command or not self.command.strip():
            raise ConfigError(f"Server '{self.id}': 'command' is required")
        if self.timeout <= 0:
            raise ConfigError(f"Server '{self.id}': 'timeout' must be positive")
        if self.max_concurrency <= 0:
            raise ConfigError(f"Server '{self.id}': 'maxConcurrency' must be positive")
        return True

    def resolve_env(self) -> dict[str, str]:
        """Resolve environment variables (e.g., ${GITHUB_TOKEN} -> actual value)."""
        resolved = {}
        for key, value in self.env.items():
            if value.startswith("${") and value.endswith("}"):
                env_var = value[2:-1]
                env_value = os.environ.get(env_var)
                if env_value is None:
                    logger.warning(f"Environment variable '{env_var}' not set for server '{self.id}'")
                    resolved[key] = ""
                else:
                    resolved[key] = env_value
            else:
                resolved[key] = value
        return resolved

    @classmethod
    def from_dict(cls, server_id: str, data: Any) -> "ServerConfig":
        """Create ServerConfig from a stored entry, raising ConfigError if malformed."""
        if not isinstance(data, dict):
            raise ConfigError(f"Server '{server_id}': entry must be an object")
        try:
            entry = ServerEntry.model_validate(data)
        except ValidationError as e:
            problems = ", ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '$'}: {err['msg']}" for err in e.errors()
            )
            raise ConfigError(f"Server '{server_id}': {problems}") from e

        config = cls(
            id=server_id,
            command=entry.command,
            args=list(entry.args),
            env=dict(entry.env),
            enabled=not entry.disabled,
            name=entry.name or server_id,
            description=entry.description,
            timeout=entry.timeout,
            max_concurrency=entry.max_concurrency,
        )
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        """Export in the stored entry format."""
        data: dict[str, Any] = {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "disabled": not self.enabled,
            "timeout": self.timeout,
            "maxConcurrency": self.max_concurrency,
        }
        if self.name and self.name != self.id:
            data["name"] = self.name
        if self.description:
            data["description"] = self.description
        return data


class ConfigStore(Protocol):
    """Where server configurations live. Owned by the host application."""

    def read(self) -> dict[str, Any]:
        ...

    def write(self, data: dict[str, Any]) -> None:
        ...


class JSONConfigStore:
    """Config store backed by a JSON file ({"mcpServers": {...}})."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            logger.info(f"No MCP config file at {self.path}, starting with no servers")
            return {"mcpServers": {}}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in MCP config {self.path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read MCP config {self.path}: {e}") from e

    def write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(prefix=".mcp-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise ConfigError(f"Failed to save MCP config {self.path}: {e}") from e
        logger.info(f"Saved MCP config to {self.path}")


class MemoryConfigStore:
    """Config store kept in memory, for hosts that persist configuration themselves."""

    def __init__(self, data: dict[str, Any] | None = None):
        self.data: dict[str, Any] = json.loads(json.dumps(data)) if data else {"mcpServers": {}}
        self.writes = 0

    def read(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.data))

    def write(self, data: dict[str, Any]) -> None:
        self.data = json.loads(json.dumps(data))
        self.writes += 1


class ServerRegistry:
    """Registry for managing MCP server configurations."""

    def __init__(self, store: ConfigStore | None = None, load: bool = False):
        """
        Initialize the server registry.

        Args:
            store: Configuration store. Defaults to an empty in-memory store.
            load: Load from the store immediately.
        """
        self._servers: dict[str, ServerConfig] = {}
        self._invalid_entries: dict[str, Any] = {}
        self.load_errors: dict[str, str] = {}
        self._store: ConfigStore = store if store is not None else MemoryConfigStore()

        if load:
            self.load()

    @property
    def store(self) -> ConfigStore:
        return self._store

    def load(self) -> list[ServerConfig]:
        """
        Load server configurations from the store.

        Malformed entries are skipped and reported in ``load_errors``.

        Raises:
            ConfigError: If the store cannot produce a server mapping at all.
        """
        data = self._store.read()
        if not isinstance(data, dict):
            raise ConfigError("MCP config root must be an object")
        servers = data.get("mcpServers", {})
        if not isinstance(servers, dict):
            raise ConfigError("Invalid configuration structure. Expected 'mcpServers' object.")

        loaded: dict[str, ServerConfig] = {}
        invalid: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for server_id, entry in servers.items():
            try:
                loaded[server_id] = ServerConfig.from_dict(server_id, entry)
                logger.debug(f"Loaded MCP server config: {server_id}")
            except ConfigError as e:
                invalid[server_id] = entry
                errors[server_id] = e.message
                logger.warning(f"Skipping MCP server '{server_id}': {e.message}")

        self._servers = loaded
        self._invalid_entries = invalid
        self.load_errors = errors
        logger.info(f"Loaded {len(loaded)} MCP server configs ({len(errors)} skipped)")
        return list(loaded.values())

    def reload(self) -> list[ServerConfig]:
        return self.load()

    def register(self, config: ServerConfig) -> None:
        """Register or replace a server configuration."""
        config.validate()
        self._servers[config.id] = config
        self._invalid_entries.pop(config.id, None)
        self.load_errors.pop(config.id, None)
        logger.info(f"Registered MCP server: {config.id}")

    def add(self, config: ServerConfig) -> None:
        """Register a new server; fails if the id is taken."""
        if config.id in self._servers:
            raise ConfigError(f"Server with id '{config.id}' already exists")
        self.register(config)

    def update(self, config: ServerConfig) -> ServerConfig | None:
        """Replace an existing server configuration. Returns the previous one."""
        previous = self._servers.get(config.id)
        if previous is None:
            raise ConfigError(f"Server with id '{config.id}' not found")
        self.register(config)
        return previous

    def set_enabled(self, server_id: str, enabled: bool) -> ServerConfig:
        config = self._servers.get(server_id)
        if config is None:
            raise ConfigError(f"Server with id '{server_id}' not found")
        updated = replace(config, enabled=enabled)
        self._servers[server_id] = updated
        return updated

    def unregister(self, server_id: str) -> bool:
        """Unregister a server configuration."""
        if server_id in self._servers:
            del self._servers[server_id]
            logger.info(f"Unregistered MCP server: {server_id}")
            return True
        return False

    def get(self, server_id: str) -> ServerConfig | None:
        """Get a server configuration by id."""
        return self._servers.get(server_id)

    def list(self) -> list[ServerConfig]:
        """List all registered server configurations."""
        return list(self._servers.values())

    def list_enabled(self) -> list[ServerConfig]:
        return [config for config in self._servers.values() if config.enabled]

    def list_names(self) -> list[str]:
        """List all registered server ids."""
        return list(self._servers.keys())

    def to_dict(self) -> dict[str, Any]:
        """Export registry in the store format, keeping entries that failed validation."""
        servers: dict[str, Any] = dict(self._invalid_entries)
        servers.update({server_id: config.to_dict() for server_id, config in self._servers.items()})
        return {"mcpServers": servers}

    def save(self) -> None:
        """Ask the store to rewrite the configuration."""
        self._store.write(self.to_dict())
