"""
chatbridge Utilities Package.

Common helpers shared by the core facade.
"""

from .responses import (
    Outcome,
    ok,
    fail,
    from_error,
    returns_outcome,
)

__all__ = [
    "Outcome",
    "ok",
    "fail",
    "from_error",
    "returns_outcome",
]
