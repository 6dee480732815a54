"""
Tool Executor: Execute tools on connected MCP servers.

Every invocation gets an ExecutionRecord that moves through

    pending -> running -> completed | failed | cancelled

(pending may also end directly in failed or cancelled). Records live in the
active set while they are not terminal and in the bounded history afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import anyio
from jsonschema import Draft7Validator
from jsonschema.validators import validator_for
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, CallToolResult, EmbeddedResource, ImageContent, TextContent

from ..config import Settings
from ..events import EventEmitter, ExecutionEventPayload
from .catalog import ToolCatalog, ToolDescriptor, ValidSchema
from .errors import (
    ExecutionCancelledError,
    ExecutionTimeoutError,
    InvalidArgumentsError,
    MCPError,
    ServerConnectionError,
    describe_error,
)

if TYPE_CHECKING:
    from .client import MCPClientManager

logger = logging.getLogger(__name__)

# error_type for JSON-RPC errors the server answers with
PROTOCOL_ERROR = "ProtocolError"

TRANSPORT_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    BrokenPipeError,
    ConnectionResetError,
)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})

_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
}

_STAT_KEYS = {
    ExecutionStatus.COMPLETED: "succeeded",
    ExecutionStatus.FAILED: "failed",
    ExecutionStatus.CANCELLED: "cancelled",
}


@dataclass
class ToolResult:
    """Result of executing an MCP tool."""

    success: bool
    content: list[dict[str, Any]] = field(default_factory=list)
    structured_content: dict[str, Any] | None = None
    error: str | None = None
    is_error: bool = False

    @classmethod
    def from_call_result(cls, result: CallToolResult) -> "ToolResult":
        # Convert content to serializable format
        content = []
        for item in result.content:
            if isinstance(item, TextContent):
                content.append({"type": "text", "text": item.text})
            elif isinstance(item, ImageContent):
                content.append({
                    "type": "image",
                    "data": item.data,
                    "mimeType": item.mimeType,
                })
            elif isinstance(item, EmbeddedResource):
                content.append({
                    "type": "resource",
                    "resource": item.resource.model_dump(mode="json"),
                })
            else:
                content.append({"type": getattr(item, "type", "unknown"), "data": str(item)})

        is_error = bool(getattr(result, "isError", False))
        tool_result = cls(
            success=not is_error,
            content=content,
            structured_content=getattr(result, "structuredContent", None),
            is_error=is_error,
        )
        if is_error:
            tool_result.error = tool_result.text or "Tool reported an error"
        return tool_result

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "success": self.success,
            "content": self.content,
            "structured_content": self.structured_content,
            "error": self.error,
            "is_error": self.is_error,
        }

    @property
    def text(self) -> str:
        """Get concatenated text content."""
        parts = []
        for item in self.content:
            if item.get("type") == "text":
                parts.append(item.get("text", ""))
        return "\n".join(parts)


@dataclass
class ToolInvocation:
    """A request to run a tool, as made by the caller."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    requested_at: float = field(default_factory=time.time)


@dataclass
class ExecutionRecord:
    """Lifecycle of one invocation."""

    invocation: ToolInvocation
    server_id: str
    resolved_name: str
    timeout: float
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: float | None = None
    ended_at: float | None = None
    result: ToolResult | None = None
    error: str | None = None
    error_type: str | None = None
    status_history: list[tuple[str, float]] = field(default_factory=list)
    # Latest progress report while running
    progress: dict[str, Any] | None = None

    def __post_init__(self):
        if not self.status_history:
            self.status_history.append((self.status.value, self.invocation.requested_at))

    @property
    def id(self) -> str:
        return self.invocation.id

    @property
    def session_id(self) -> str | None:
        return self.invocation.session_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at) * 1000

    def transition(self, status: ExecutionStatus) -> None:
        """Move to a new status, refusing to leave a terminal one."""
        if status not in _TRANSITIONS.get(self.status, ()):
            raise ValueError(f"Invalid execution transition {self.status.value} -> {status.value}")
        now = time.time()
        self.status = status
        self.status_history.append((status.value, now))
        if status == ExecutionStatus.RUNNING:
            self.started_at = now
        elif status in TERMINAL_STATUSES:
            if self.started_at is None:
                self.started_at = now
            self.ended_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.invocation.tool_name,
            "resolved_name": self.resolved_name,
            "server_id": self.server_id,
            "session_id": self.session_id,
            "arguments": self.invocation.arguments,
            "status": self.status.value,
            "requested_at": self.invocation.requested_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "timeout": self.timeout,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "error_type": self.error_type,
            "progress": self.progress,
            "status_history": [{"status": s, "at": t} for s, t in self.status_history],
        }


@dataclass
class _ActiveExecution:
    record: ExecutionRecord
    task: asyncio.Future | None = None
    cancel_requested: bool = False


def _is_transport_failure(error: BaseException) -> bool:
    if isinstance(error, TRANSPORT_ERRORS):
        return True
    if isinstance(error, McpError):
        return getattr(error.error, "code", None) == CONNECTION_CLOSED
    nested = getattr(error, "exceptions", None)
    return bool(nested) and any(_is_transport_failure(e) for e in nested)


def _json_path(parts) -> str:
    return "$" + "".join(f"[{p}]" if isinstance(p, int) else f".{p}" for p in parts)


class ToolExecutor:
    """Executes tools on MCP server sessions and tracks every invocation."""

    def __init__(
        self,
        connections: "MCPClientManager",
        catalog: ToolCatalog | None = None,
        events: EventEmitter | None = None,
        settings: Settings | None = None,
    ):
        self.connections = connections
        self.catalog = catalog or ToolCatalog(connections)
        self.events = events or connections.events
        self.settings = settings or connections.settings

        self._active: dict[str, _ActiveExecution] = {}
        self._history: deque[ExecutionRecord] = deque(maxlen=self.settings.max_history)
        self._lock = threading.Lock()
        self._slots: dict[tuple[str, int], asyncio.Semaphore] = {}

    def _slot_for(self, descriptor: ToolDescriptor) -> asyncio.Semaphore:
        config = self.connections.registry.get(descriptor.server_id)
        limit = config.max_concurrency if config else 1
        key = (descriptor.server_id, limit)
        if key not in self._slots:
            self._slots[key] = asyncio.Semaphore(limit)
        return self._slots[key]

    def _resolve_timeout(self, descriptor: ToolDescriptor, timeout: float | None) -> float:
        if timeout is None or timeout <= 0:
            config = self.connections.registry.get(descriptor.server_id)
            timeout = config.timeout if config else self.settings.default_tool_timeout
        return min(timeout, self.settings.max_tool_timeout)

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionRecord:
        """
        Execute a tool on the server that owns it.

        Args:
            tool_name: Qualified name, function alias or unambiguous bare name
            arguments: Tool arguments
            session_id: Conversation the invocation belongs to
            timeout: Seconds before the call is abandoned

        Returns:
            The terminal ExecutionRecord

        Raises:
            ToolNotFoundError: No connected server exposes the tool.
            AmbiguousToolError: The bare name matches several servers.
        """
        descriptor = self.catalog.resolve_tool(tool_name)

        invocation = ToolInvocation(tool_name=tool_name, arguments=dict(arguments or {}), session_id=session_id)
        record = ExecutionRecord(
            invocation=invocation,
            server_id=descriptor.server_id,
            resolved_name=descriptor.name,
            timeout=self._resolve_timeout(descriptor, timeout),
        )
        active = _ActiveExecution(record=record)
        with self._lock:
            self._active[record.id] = active
        self._emit(EventEmitter.EXECUTION_STARTED, record)
        logger.info(f"Executing tool '{descriptor.qualified_name}' ({record.id})")

        active.task = asyncio.ensure_future(self._run(record, descriptor))
        try:
            await active.task
        except asyncio.CancelledError:
            if active.cancel_requested:
                return record
            # The caller itself was cancelled
            active.task.cancel()
            self._finish(record, ExecutionStatus.CANCELLED, error="Execution cancelled", error_type=ExecutionCancelledError.error_type)
            raise
        return record

    async def _run(self, record: ExecutionRecord, descriptor: ToolDescriptor) -> None:
        try:
            async with self._slot_for(descriptor):
                if not self._transition(record, ExecutionStatus.RUNNING):
                    return
                session = self.connections.get_session(descriptor.server_id)
                self._validate_arguments(descriptor, record.invocation.arguments)

                logger.debug(f"Calling '{descriptor.qualified_name}' with args: {record.invocation.arguments}")
                threshold = self.settings.slow_tool_warning
                warning = None
                if 0 < threshold < record.timeout:
                    warning = asyncio.get_running_loop().call_later(threshold, self._warn_slow, record, threshold)
                try:
                    call_result = await asyncio.wait_for(
                        session.call_tool(
                            descriptor.name,
                            record.invocation.arguments,
                            progress_callback=self._progress_callback(record),
                        ),
                        record.timeout,
                    )
                except asyncio.TimeoutError:
                    raise ExecutionTimeoutError(descriptor.qualified_name, record.timeout) from None
                finally:
                    if warning is not None:
                        warning.cancel()
        except asyncio.CancelledError:
            raise
        except MCPError as e:
            self._finish(record, ExecutionStatus.FAILED, error=e.message, error_type=e.error_type)
            return
        except Exception as e:
            message = describe_error(e)
            if _is_transport_failure(e):
                self._finish(record, ExecutionStatus.FAILED, error=message, error_type=ServerConnectionError.error_type)
                # Completes even if the caller is cancelled meanwhile
                await asyncio.shield(
                    self.connections.mark_error(descriptor.server_id, f"Transport failure during tool call: {message}")
                )
            elif isinstance(e, McpError):
                self._finish(record, ExecutionStatus.FAILED, error=message, error_type=PROTOCOL_ERROR)
            else:
                self._finish(record, ExecutionStatus.FAILED, error=message, error_type=type(e).__name__)
            return

        result = ToolResult.from_call_result(call_result)
        if result.is_error:
            self._finish(record, ExecutionStatus.FAILED, result=result, error=result.error, error_type="ToolError")
        else:
            self._finish(record, ExecutionStatus.COMPLETED, result=result)

    def _progress_callback(self, record: ExecutionRecord):
        """Forward MCP progress notifications of one call as execution_progress events."""

        async def report(progress: float, total: float | None, message: str | None) -> None:
            self._report_progress(record, message, progress=progress, total=total)

        return report

    def _warn_slow(self, record: ExecutionRecord, threshold: float) -> None:
        message = f"Tool is taking longer than expected ({threshold:g}s)"
        if self._report_progress(record, message):
            logger.warning(f"Tool '{record.server_id}.{record.resolved_name}' still running after {threshold:g}s ({record.id})")

    def _report_progress(
        self,
        record: ExecutionRecord,
        message: str | None,
        progress: float | None = None,
        total: float | None = None,
    ) -> bool:
        with self._lock:
            if record.is_terminal:
                return False
            record.progress = {"progress": progress, "total": total, "message": message}
        self._emit(EventEmitter.EXECUTION_PROGRESS, record)
        return True

    def _validate_arguments(self, descriptor: ToolDescriptor, arguments: dict[str, Any]) -> None:
        if not isinstance(descriptor.input_schema, ValidSchema):
            raise InvalidArgumentsError(
                descriptor.qualified_name,
                [{"path": "$", "message": f"Tool is not callable: {descriptor.input_schema.reason}"}],
            )
        if not self.settings.validate_arguments:
            return
        schema = descriptor.input_schema.schema
        validator = validator_for(schema, default=Draft7Validator)(schema)
        errors = [
            {"path": _json_path(e.absolute_path), "message": e.message}
            for e in sorted(validator.iter_errors(arguments), key=lambda e: _json_path(e.absolute_path))
        ]
        if errors:
            raise InvalidArgumentsError(descriptor.qualified_name, errors)

    def _transition(self, record: ExecutionRecord, status: ExecutionStatus) -> bool:
        with self._lock:
            if record.is_terminal:
                return False
            record.transition(status)
            return True

    def _finish(
        self,
        record: ExecutionRecord,
        status: ExecutionStatus,
        result: ToolResult | None = None,
        error: str | None = None,
        error_type: str | None = None,
    ) -> bool:
        """Move a record to a terminal status and into history, exactly once."""
        with self._lock:
            if record.is_terminal:
                return False
            record.result = result
            record.error = error
            record.error_type = error_type
            record.transition(status)
            self._active.pop(record.id, None)
            self._history.append(record)

        if status == ExecutionStatus.COMPLETED:
            logger.info(f"Tool '{record.server_id}.{record.resolved_name}' completed in {record.duration_ms:.0f}ms")
            event = EventEmitter.EXECUTION_COMPLETED
        elif status == ExecutionStatus.CANCELLED:
            logger.info(f"Tool '{record.server_id}.{record.resolved_name}' cancelled ({record.id})")
            event = EventEmitter.EXECUTION_CANCELLED
        else:
            logger.error(f"Tool '{record.server_id}.{record.resolved_name}' failed: {error}")
            event = EventEmitter.EXECUTION_FAILED
        self._emit(event, record)
        return True

    def _emit(self, event: str, record: ExecutionRecord) -> None:
        self.events.emit(
            event,
            ExecutionEventPayload(
                event_name=event,
                invocation_id=record.id,
                tool_name=record.invocation.tool_name,
                server_id=record.server_id,
                session_id=record.session_id,
                status=record.status.value,
                result=record.result.to_dict() if record.result else None,
                error=record.error,
                error_type=record.error_type,
                duration_ms=record.duration_ms,
                progress=dict(record.progress) if record.progress else None,
            ),
        )

    def cancel(self, invocation_id: str, reason: str = "Execution cancelled by user") -> bool:
        """
        Cancel an active invocation.

        The dispatched call is abandoned; the server process is left running.

        Returns:
            False if the id is unknown or already terminal.
        """
        with self._lock:
            active = self._active.get(invocation_id)
            if active is None:
                return False
            active.cancel_requested = True

        if not self._finish(active.record, ExecutionStatus.CANCELLED, error=reason, error_type=ExecutionCancelledError.error_type):
            return False
        if active.task is not None and not active.task.done():
            active.task.cancel()
        return True

    def get_active_executions(self, session_id: str | None = None) -> list[ExecutionRecord]:
        with self._lock:
            records = [a.record for a in self._active.values()]
        if session_id is not None:
            records = [r for r in records if r.session_id == session_id]
        return sorted(records, key=lambda r: r.invocation.requested_at)

    def get_history(self, session_id: str | None = None, limit: int | None = None) -> list[ExecutionRecord]:
        """Terminal records, newest first."""
        with self._lock:
            records = list(reversed(self._history))
        if session_id is not None:
            records = [r for r in records if r.session_id == session_id]
        if limit is not None:
            records = records[:max(limit, 0)]
        return records

    def get_execution(self, invocation_id: str) -> ExecutionRecord | None:
        with self._lock:
            active = self._active.get(invocation_id)
            if active is not None:
                return active.record
            for record in self._history:
                if record.id == invocation_id:
                    return record
        return None

    def get_statistics(self, session_id: str | None = None) -> dict[str, Any]:
        """Aggregate counts and durations over the history."""
        records = self.get_history(session_id=session_id)
        total = len(records)
        total_time = sum(r.duration_ms or 0.0 for r in records)

        breakdown: dict[str, dict[str, Any]] = {}
        for record in records:
            key = f"{record.server_id}.{record.resolved_name}"
            entry = breakdown.setdefault(key, {"total": 0, "succeeded": 0, "failed": 0, "cancelled": 0, "total_execution_time_ms": 0.0})
            entry["total"] += 1
            entry[_STAT_KEYS[record.status]] += 1
            entry["total_execution_time_ms"] += record.duration_ms or 0.0

        return {
            "total": total,
            "succeeded": sum(1 for r in records if r.status == ExecutionStatus.COMPLETED),
            "failed": sum(1 for r in records if r.status == ExecutionStatus.FAILED),
            "cancelled": sum(1 for r in records if r.status == ExecutionStatus.CANCELLED),
            "total_execution_time_ms": total_time,
            "average_execution_time_ms": total_time / total if total else 0.0,
            "tool_breakdown": breakdown,
        }

    def prune_history(self, max_age: float) -> int:
        """
        Drop history records that ended at least max_age seconds ago.

        Returns:
            Number of records removed
        """
        cutoff = time.time() - max_age
        with self._lock:
            kept = [r for r in self._history if r.ended_at is None or r.ended_at > cutoff]
            removed = len(self._history) - len(kept)
            self._history.clear()
            self._history.extend(kept)
        if removed:
            logger.info(f"Pruned {removed} execution records older than {max_age:g}s")
        return removed

    def clear_history(self, session_id: str | None = None) -> int:
        with self._lock:
            before = len(self._history)
            if session_id is None:
                self._history.clear()
            else:
                kept = [r for r in self._history if r.session_id != session_id]
                self._history.clear()
                self._history.extend(kept)
            return before - len(self._history)

