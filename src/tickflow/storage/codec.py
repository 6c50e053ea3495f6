"""JSON encoding shared by the persistent storage backends.

State, outputs, payloads and definitions are schema-less JSON documents.
Values JSON cannot represent natively (datetimes, dates, UUIDs, enums) are
encoded as strings; anything else is a StorageError rather than silently
stringified.
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from tickflow.storage.base import StorageError


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(value: Any) -> str:
    try:
        return json.dumps(value, default=_default, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise StorageError(f"Value is not JSON serializable: {e}") from e


def loads(text: str | bytes | None) -> Any:
    if text is None:
        return None
    return json.loads(text)


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, UTC)
