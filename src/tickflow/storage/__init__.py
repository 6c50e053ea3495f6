"""Storage backends for durable flow state.

Provides multiple storage implementations behind a common interface:
    - FlowStore: Abstract interface (four repositories + advisory lock)
    - InMemoryFlowStore: In-memory storage for testing
    - SqliteFlowStore: SQLite-backed storage
    - RedisFlowStore: Redis-backed distributed storage

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the FlowStore interface.
    The engine depends on the abstraction, so backends can be swapped
    without touching engine code.
"""

from tickflow.storage.base import (
    FlowDefinitionRepo,
    FlowEventRepo,
    FlowRunRepo,
    FlowStore,
    IdempotencyRepo,
    StorageError,
)

# Lazy imports: the SQLite and Redis adapters pull in their drivers, which
# callers using another backend should not have to import.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryFlowStore":
        from tickflow.storage.memory import InMemoryFlowStore

        return InMemoryFlowStore
    elif name == "SqliteFlowStore":
        from tickflow.storage.sqlite import SqliteFlowStore

        return SqliteFlowStore
    elif name == "RedisFlowStore":
        from tickflow.storage.redis import RedisFlowStore

        return RedisFlowStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "FlowStore",
    "FlowDefinitionRepo",
    "FlowRunRepo",
    "FlowEventRepo",
    "IdempotencyRepo",
    "StorageError",
    "InMemoryFlowStore",
    "SqliteFlowStore",
    "RedisFlowStore",
]
