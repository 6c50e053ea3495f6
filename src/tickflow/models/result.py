"""
Node execution results.

Design Pattern: State Machine using Union types
A node handler returns exactly one of three outcomes; the engine matches
on the concrete type:

    match result:
        case Ok(output=output, patch=patch):
            ...
        case Wait(reason=reason):
            ...
        case Error(error=error):
            ...

Suspension (Wait) is an explicit, resumable pause, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

__all__ = [
    "NodeError",
    "Ok",
    "Wait",
    "Error",
    "NodeResult",
    "ok",
    "wait",
    "error",
    "RETRYABLE_ERROR_CODES",
]

RETRYABLE_ERROR_CODES = frozenset({"TIMEOUT", "NETWORK_ERROR", "RATE_LIMIT"})


@dataclass(frozen=True)
class NodeError:
    """Classified failure of a node.

    Attributes:
        code: Stable classification (e.g. ``TIMEOUT``, ``UNKNOWN``)
        message: Human readable description
        retryable: Explicit retry hint; None defers to RETRYABLE_ERROR_CODES
    """

    code: str
    message: str
    retryable: bool | None = None

    @property
    def is_retryable(self) -> bool:
        if self.retryable is not None:
            return self.retryable
        return self.code in RETRYABLE_ERROR_CODES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.retryable is not None:
            data["retryable"] = self.retryable
        return data

    @classmethod
    def from_exception(cls, exc: BaseException) -> NodeError:
        """Normalize an arbitrary exception, honouring a ``code`` attribute."""
        code = getattr(exc, "code", None)
        retryable = None
        is_retryable = getattr(exc, "is_retryable", None)
        if callable(is_retryable):
            retryable = bool(is_retryable())
        return cls(
            code=str(code) if code is not None else "UNKNOWN",
            message=str(exc) or type(exc).__name__,
            retryable=retryable,
        )


@dataclass(frozen=True)
class Ok:
    """Node finished; the run may advance."""

    output: Any = None
    patch: dict[str, Any] | None = None
    status: str = field(default="ok", init=False)


@dataclass(frozen=True)
class Wait:
    """Node is blocked on something external; the run parks on this node."""

    reason: str | None = None
    until: datetime | str | None = None
    output: Any = None
    patch: dict[str, Any] | None = None
    status: str = field(default="wait", init=False)


@dataclass(frozen=True)
class Error:
    """Node failed; the run will be aborted."""

    error: NodeError
    status: str = field(default="error", init=False)


NodeResult = Union[Ok, Wait, Error]


def ok(output: Any = None, patch: dict[str, Any] | None = None) -> Ok:
    return Ok(output=output, patch=patch)


def wait(
    reason: str | None = None,
    until: datetime | str | None = None,
    output: Any = None,
    patch: dict[str, Any] | None = None,
) -> Wait:
    return Wait(reason=reason, until=until, output=output, patch=patch)


def error(code: str, message: str, retryable: bool | None = None) -> Error:
    return Error(error=NodeError(code=code, message=message, retryable=retryable))
