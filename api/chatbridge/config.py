"""
Runtime settings for the MCP connection and execution core.

Values come from (in increasing priority):
- the defaults below
- environment variables prefixed with CHATBRIDGE_ (or a .env file)
- an optional JSON overrides file (data/chatbridge_settings.json)
"""

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Path to user-configurable overrides
SETTINGS_OVERRIDES_PATH = Path("data/chatbridge_settings.json")


class Settings(BaseSettings):
    """Configuration settings for the MCP core."""

    # Server configuration store
    config_path: str = ".mcp-servers.json"

    # Connection lifecycle (seconds)
    connect_timeout: float = 15.0
    close_timeout: float = 5.0

    # Tool execution (seconds)
    default_tool_timeout: float = 30.0
    max_tool_timeout: float = 300.0
    validate_arguments: bool = True
    max_history: int = 1000
    slow_tool_warning: float = 10.0  # Running calls report a progress warning after this; 0 disables

    # Health monitoring
    health_check_interval: float = 30.0
    health_check_timeout: float = 5.0
    tool_cache_ttl: float = 60.0

    # Reconnection policy
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 2.0  # Doubled after every failed attempt

    # Number of stderr lines kept when a server fails
    diagnostics_lines: int = 20

    class Config:
        env_prefix = "CHATBRIDGE_"
        env_file = ".env"
        extra = "ignore"


_runtime_settings: Optional[Settings] = None
_settings_lock = Lock()


def get_settings() -> Settings:
    """Get settings instance with runtime overrides applied."""
    global _runtime_settings
    with _settings_lock:
        if _runtime_settings is None:
            _runtime_settings = _load_settings_with_overrides()
        return _runtime_settings


def _load_settings_with_overrides(path: Path = SETTINGS_OVERRIDES_PATH) -> Settings:
    """Load base settings and apply any overrides from the JSON file."""
    base = Settings()

    if path.exists():
        try:
            with open(path, "r") as f:
                overrides = json.load(f)
            base_dict = base.model_dump()
            base_dict.update(overrides)
            logger.info(f"Loaded settings overrides from {path}")
            return Settings(**base_dict)
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.error(f"Failed to load settings overrides from {path}: {e}, using defaults")

    return base


def save_settings_overrides(overrides: Dict[str, Any], path: Path = SETTINGS_OVERRIDES_PATH) -> None:
    """
    Merge overrides into the JSON file and drop the cached settings.

    Args:
        overrides: Setting names and values to persist
        path: Overrides file location
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    existing: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r") as f:
                existing = json.load(f)
        except (json.JSONDecodeError, OSError):
            existing = {}

    existing.update(overrides)
    with open(path, "w") as f:
        json.dump(existing, f, indent=2)

    reset_settings()


def reset_settings() -> None:
    """Clear cached settings so the next get_settings() reloads."""
    global _runtime_settings
    with _settings_lock:
        _runtime_settings = None
