"""
Event system for connection and execution lifecycle notifications.

Provides a simple callback registry without external framework dependencies.

Usage:
    from chatbridge.events import EventEmitter, ExecutionEventPayload

    events = EventEmitter()

    def on_done(payload: ExecutionEventPayload):
        print(f"{payload.tool_name} finished in {payload.duration_ms}ms")

    unsubscribe = events.on(EventEmitter.EXECUTION_COMPLETED, on_done)
    ...
    unsubscribe()
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

# Event callback types
SyncCallback = Callable[..., None]
AsyncCallback = Callable[..., Any]  # Coroutine function
Callback = Union[SyncCallback, AsyncCallback]


@dataclass
class EventPayload:
    """Base payload for lifecycle events."""

    event_name: str
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServerStateChangedPayload(EventPayload):
    """Payload for server_state_changed."""

    server_id: str = ""
    previous_state: str = ""
    state: str = ""
    error: Optional[str] = None
    tool_count: int = 0


@dataclass
class ExecutionEventPayload(EventPayload):
    """Payload for execution_started / progress / completed / failed / cancelled."""

    invocation_id: str = ""
    tool_name: str = ""
    server_id: str = ""
    session_id: Optional[str] = None
    status: str = ""
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: Optional[float] = None
    progress: Optional[Dict[str, Any]] = None  # progress, total, message


class EventEmitter:
    """
    Observer list for core lifecycle events.

    Sync callbacks run immediately inside emit(); async callbacks are
    scheduled on the running loop. Errors in handlers are logged and never
    reach the operation that emitted the event.

    Predefined events:
        - SERVER_STATE_CHANGED
        - EXECUTION_STARTED
        - EXECUTION_PROGRESS
        - EXECUTION_COMPLETED
        - EXECUTION_FAILED
        - EXECUTION_CANCELLED
    """

    SERVER_STATE_CHANGED = "server_state_changed"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_PROGRESS = "execution_progress"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"

    def __init__(self):
        self._handlers: Dict[str, List[Callback]] = {}
        self._pending: Set[asyncio.Task] = set()
        self._enabled = True

    def on(self, event: str, callback: Callback) -> Callable[[], None]:
        """
        Register a callback for an event.

        Returns:
            Unsubscribe function
        """
        self._handlers.setdefault(event, []).append(callback)

        def unsubscribe():
            self.off(event, callback)

        return unsubscribe

    def off(self, event: str, callback: Callback) -> bool:
        """Remove a callback. Returns True if it was registered."""
        try:
            self._handlers.get(event, []).remove(callback)
            return True
        except ValueError:
            return False

    def emit(self, event: str, payload: Optional[EventPayload] = None) -> int:
        """
        Emit an event to every current subscriber.

        Returns:
            Number of handlers called
        """
        if not self._enabled:
            return 0

        called = 0
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._handlers.get(event, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        logger.debug(f"Skipping async handler for {event}: no event loop")
                        continue
                    task = loop.create_task(handler(payload))
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done)
                else:
                    handler(payload)
                called += 1
            except Exception as e:
                logger.warning(f"Event handler error for {event}: {e}")

        return called

    def _handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Async event handler error: {task.exception()}")

    def clear(self, event: Optional[str] = None) -> None:
        """Clear handlers for an event or all events."""
        if event is None:
            self._handlers.clear()
        elif event in self._handlers:
            self._handlers[event].clear()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        """Disable event emission (handlers are kept but not called)."""
        self._enabled = False

    def handler_count(self, event: Optional[str] = None) -> int:
        """Number of registered handlers for one event, or for all events."""
        if event is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(event, []))
