"""
Tool Catalog: Aggregated view of the tools exposed by connected MCP servers.

Tools are addressed either by their server-qualified name (``weather.get_weather``),
by the function-safe alias used in LLM function specs (``weather_get_weather``),
or by their bare name when exactly one connected server exposes it.
"""

from __future__ import annotations

import copy
import logging
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from .errors import AmbiguousToolError, ToolNotFoundError

if TYPE_CHECKING:
    from mcp.types import Tool

    from .client import MCPClientManager

logger = logging.getLogger(__name__)

DANGEROUS_KEYWORDS = (
    "delete", "remove", "destroy", "kill", "terminate",
    "format", "wipe", "clear", "reset", "drop",
    "execute", "run", "shell", "command", "script",
)

CATEGORY_KEYWORDS = (
    ("filesystem", ("file", "read", "write")),
    ("web", ("web", "http", "url")),
    ("search", ("search", "query")),
    ("version-control", ("git", "repo")),
)


@dataclass(frozen=True)
class ValidSchema:
    """An input schema usable for argument validation and function specs."""

    schema: dict[str, Any]

    @property
    def valid(self) -> bool:
        return True


@dataclass(frozen=True)
class InvalidSchema:
    """An input schema that was missing or could not be used."""

    reason: str

    @property
    def valid(self) -> bool:
        return False


InputSchema = Union[ValidSchema, InvalidSchema]


def _is_object_root(schema: dict[str, Any]) -> bool:
    declared = schema.get("type")
    if declared == "object":
        return True
    if isinstance(declared, list) and "object" in declared:
        return True
    return declared is None and isinstance(schema.get("properties"), dict)


def parse_input_schema(raw: Any) -> InputSchema:
    """
    Parse a tool's declared input schema.

    An empty mapping means "no arguments". Anything that is not a JSON Schema
    describing an object is rejected with a reason.
    """
    if raw is None:
        return InvalidSchema("Tool declares no input schema")
    if not isinstance(raw, dict):
        return InvalidSchema(f"Input schema must be an object, got {type(raw).__name__}")
    if not raw:
        return ValidSchema({"type": "object", "properties": {}})
    if not _is_object_root(raw):
        return InvalidSchema(f"Input schema root must be of type 'object', got {raw.get('type')!r}")

    schema = copy.deepcopy(raw)
    if isinstance(schema.get("required"), list):
        try:
            schema["required"] = list(dict.fromkeys(schema["required"]))
        except TypeError:
            return InvalidSchema("Input schema 'required' must list property names")

    validator_cls = validator_for(schema, default=Draft7Validator)
    try:
        validator_cls.check_schema(schema)
    except SchemaError as e:
        return InvalidSchema(f"Input schema is not valid JSON Schema: {e.message}")

    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    return ValidSchema(schema)


def categorize_tool(name: str) -> str:
    lowered = name.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return "general"


def is_dangerous_tool(name: str, description: str | None = None) -> bool:
    text = f"{name} {description or ''}".lower()
    return any(keyword in text for keyword in DANGEROUS_KEYWORDS)


@dataclass(frozen=True)
class ToolDescriptor:
    """Information about an available MCP tool."""

    name: str
    server_id: str
    description: str
    input_schema: InputSchema
    raw_schema: Any = None

    @property
    def qualified_name(self) -> str:
        return f"{self.server_id}.{self.name}"

    @property
    def function_name(self) -> str:
        return f"{self.server_id}_{self.name}"

    @property
    def callable(self) -> bool:
        return self.input_schema.valid

    @property
    def category(self) -> str:
        return categorize_tool(self.name)

    @property
    def dangerous(self) -> bool:
        return is_dangerous_tool(self.name, self.description)

    @classmethod
    def from_mcp_tool(cls, tool: "Tool", server_id: str) -> "ToolDescriptor":
        """Create a ToolDescriptor from an MCP Tool object."""
        raw_schema = getattr(tool, "inputSchema", None)
        input_schema = parse_input_schema(raw_schema)
        if not input_schema.valid:
            logger.warning(
                f"Tool '{tool.name}' on server '{server_id}' is not callable: {input_schema.reason}"
            )
        return cls(
            name=tool.name,
            server_id=server_id,
            description=getattr(tool, "description", None) or "",
            input_schema=input_schema,
            raw_schema=raw_schema,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        data = {
            "name": self.name,
            "qualified_name": self.qualified_name,
            "function_name": self.function_name,
            "server_id": self.server_id,
            "description": self.description,
            "callable": self.callable,
            "category": self.category,
            "dangerous": self.dangerous,
        }
        if isinstance(self.input_schema, ValidSchema):
            data["input_schema"] = self.input_schema.schema
        else:
            data["input_schema"] = None
            data["schema_error"] = self.input_schema.reason
        return data

    def to_function_spec(self) -> dict[str, Any]:
        """OpenAI-style function declaration for an LLM provider."""
        if not isinstance(self.input_schema, ValidSchema):
            raise ValueError(f"Tool '{self.qualified_name}' has no usable input schema")
        return {
            "type": "function",
            "function": {
                "name": self.function_name,
                "description": self.description or f"{self.name} (from {self.server_id})",
                "parameters": self.input_schema.schema,
            },
        }


class ToolCatalog:
    """
    Read-only aggregation of tool descriptors over live connections.

    Nothing is cached here; every call reflects the connection manager's
    current state.
    """

    def __init__(self, connections: "MCPClientManager"):
        self.connections = connections

    def get_all_enabled_tools(self) -> dict[str, list[ToolDescriptor]]:
        """Tools of every connected, enabled server, keyed by server id."""
        tools: dict[str, list[ToolDescriptor]] = {}
        for connection in self.connections.list_connections():
            if connection.is_live and connection.config.enabled:
                tools[connection.server_id] = list(connection.tools)
        return tools

    def list_tools(self, server_id: str | None = None, callable_only: bool = False) -> list[ToolDescriptor]:
        """
        List available tools.

        Args:
            server_id: If provided, list tools from that server only.
            callable_only: Skip tools whose input schema is unusable.
        """
        result = []
        for sid, tools in self.get_all_enabled_tools().items():
            if server_id is not None and sid != server_id:
                continue
            result.extend(t for t in tools if t.callable or not callable_only)
        return result

    def resolve_tool(self, name: str) -> ToolDescriptor:
        """
        Resolve a requested tool name to exactly one descriptor.

        Raises:
            ToolNotFoundError: No connected server exposes the name.
            AmbiguousToolError: A bare name is exposed by several servers.
        """
        tools = self.list_tools()

        qualified = [t for t in tools if name in (t.qualified_name, t.function_name)]
        if len(qualified) > 1:
            # "a_b.c" and "a.b_c" share the alias "a_b_c"; the dotted form is canonical
            exact = [t for t in qualified if t.qualified_name == name]
            if len(exact) == 1:
                return exact[0]
            raise AmbiguousToolError(name, [t.qualified_name for t in qualified])
        if qualified:
            return qualified[0]

        bare = [t for t in tools if t.name == name]
        if len(bare) == 1:
            return bare[0]
        if bare:
            raise AmbiguousToolError(name, [t.qualified_name for t in bare])

        raise ToolNotFoundError(name)

    def get_tool_metadata(self, name: str) -> ToolDescriptor | None:
        """Resolve a name, returning None instead of raising."""
        try:
            return self.resolve_tool(name)
        except (ToolNotFoundError, AmbiguousToolError):
            return None

    def get_tool_to_server_map(self) -> dict[str, str]:
        """Map every qualified tool name to its server id."""
        return {t.qualified_name: t.server_id for t in self.list_tools()}

    def get_function_specs(self) -> list[dict[str, Any]]:
        """
        Function declarations for every callable tool.

        Tools whose function name collides with another tool's (e.g. "a_b.c"
        and "a.b_c") are left out, since providers require unique names.
        """
        tools = self.list_tools(callable_only=True)
        counts = Counter(t.function_name for t in tools)
        specs = []
        for tool in tools:
            if counts[tool.function_name] > 1:
                logger.warning(f"Skipping function spec for '{tool.qualified_name}': name '{tool.function_name}' is ambiguous")
                continue
            specs.append(tool.to_function_spec())
        return specs
