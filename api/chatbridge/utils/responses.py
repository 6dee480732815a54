"""
Outcome helpers for consumer-facing operations.

Consolidates the success/error envelope returned by the core facade so that
request handlers can serialize results without catching exceptions.
"""

from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional
import logging

from ..mcp.errors import MCPError

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """
    Result envelope of a core operation.

    Usage:
        outcome = await core.connect("weather")
        if not outcome.success:
            return {"error": outcome.error, "error_type": outcome.error_type}
        return outcome.data
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for a JSON response."""
        if self.success:
            return {"success": True, "data": _serialize(self.data)}
        data = {"success": False, "error": self.error, "error_type": self.error_type}
        if self.details:
            data.update(self.details)
        return data


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


def ok(data: Any = None) -> Outcome:
    """Create a success outcome."""
    return Outcome(success=True, data=data)


def fail(message: str, error_type: str = "Error", **details: Any) -> Outcome:
    """
    Create a failed outcome.

    Args:
        message: Error message
        error_type: Stable error kind for callers to branch on
        **details: Additional fields to include in to_dict()
    """
    return Outcome(success=False, error=message, error_type=error_type, details=details or None)


def from_error(error: MCPError) -> Outcome:
    """Turn an expected core error into a failed outcome."""
    details = error.to_dict()
    details.pop("error", None)
    details.pop("error_type", None)
    return fail(error.message, error.error_type, **details)


def returns_outcome(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Outcome]]:
    """
    Decorator converting an async operation into one that returns an Outcome.

    Consolidates the repeated pattern:
        try:
            return ok(await do_something())
        except MCPError as e:
            return fail(e.message, e.error_type)

    Return values that already are an Outcome pass through unchanged.
    Unexpected exceptions propagate.
    """

    @wraps(func)
    async def wrapped(*args, **kwargs) -> Outcome:
        try:
            result = await func(*args, **kwargs)
        except MCPError as e:
            logger.debug(f"{func.__name__} failed: {e.error_type}: {e.message}")
            return from_error(e)
        if isinstance(result, Outcome):
            return result
        return ok(result)

    return wrapped
