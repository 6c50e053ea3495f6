"""
Repository contracts the flow engine depends on.

Design Pattern: Adapter Pattern
FlowStore defines the target interface that all storage adapters implement.
Different storage backends (memory, SQLite, Redis) adapt to this common
interface, and the engine only ever talks to the abstraction.

Design Principle: Interface Segregation
The store is split into four focused repositories (definitions, runs,
events, idempotency) plus the advisory lock primitive. A FlowStore owns one
of each and manages the shared connection lifecycle.

Design Principle: Dependency Inversion
FlowEngine depends on these ABCs, not on SqliteFlowStore, which keeps the
engine testable with InMemoryFlowStore.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from tickflow.errors import FlowError
from tickflow.models import (
    EventType,
    FlowDefinition,
    FlowEvent,
    FlowRun,
    IdempotencyRecord,
    StoredDefinition,
)


class StorageError(FlowError):
    """
    Storage operation failed.

    Custom exception with context, not generic Exception.
    """

    code = "STORAGE_ERROR"


class FlowDefinitionRepo(ABC):
    """Durable copy of registered definitions, for listing and recovery."""

    @abstractmethod
    async def save(self, definition: FlowDefinition) -> None:
        """
        Persist a definition's JSON description.

        Saving the same ``(flow_id, version)`` twice overwrites the previous
        row (last write wins).
        """

    @abstractmethod
    async def list(self) -> list[StoredDefinition]:
        """Return all stored definitions ordered by flow id, then version."""


class FlowRunRepo(ABC):
    """Run rows. Only the lock holder writes a given run."""

    @abstractmethod
    async def create(self, run: FlowRun) -> FlowRun:
        """
        Insert a new run row.

        Raises:
            StorageError: If a run with the same id already exists
        """

    @abstractmethod
    async def get(self, run_id: str) -> FlowRun | None:
        """
        Retrieve a run snapshot.

        Returns None when the run does not exist (not an error condition).
        """

    @abstractmethod
    async def update(self, run_id: str, **fields: Any) -> FlowRun:
        """
        Apply a partial update and return the updated row.

        Accepted fields: status, current_node_id, state, outputs, step.
        ``updated_at`` is refreshed automatically.

        Raises:
            StorageError: If the run does not exist
            ValueError: If an unknown or immutable field is given
        """

    @abstractmethod
    async def find_running(self) -> list[FlowRun]:
        """Return runs in RUNNING status, oldest first."""


class FlowEventRepo(ABC):
    """Append-only per-run timeline."""

    @abstractmethod
    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: dict[str, Any] | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> FlowEvent:
        """
        Append an event, assigning the run's next sequence number.

        Events of one run are totally ordered by ``seq``; ``at`` is
        non-decreasing along that order.
        """

    @abstractmethod
    async def get_timeline(self, run_id: str) -> list[FlowEvent]:
        """Return a run's events in append order (empty for unknown runs)."""


class IdempotencyRepo(ABC):
    """Keyed store of prior ``ok`` node results."""

    @abstractmethod
    async def get(self, key: str) -> IdempotencyRecord | None:
        """Return the recorded result for ``key``, or None."""

    @abstractmethod
    async def set(self, record: IdempotencyRecord) -> None:
        """Record a result. An existing record under the same key is kept."""


class FlowStore(ABC):
    """
    Aggregate storage interface for the flow engine.

    Owns the four repositories and the advisory lock primitive, all sharing
    one connection.

    Lifecycle:
        store = SqliteFlowStore("flows.db")
        await store.connect()
        try:
            engine = FlowEngine(store)
            ...
        finally:
            await store.close()

    Stores are also async context managers that connect and close.
    """

    definitions: FlowDefinitionRepo
    runs: FlowRunRepo
    events: FlowEventRepo
    idempotency: IdempotencyRepo

    async def connect(self) -> None:
        """Open connections and initialize schema. Idempotent."""

    @abstractmethod
    async def acquire_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        """
        Try once to take the named lock for ``owner``.

        The lease expires after ``ttl_ms`` so a crashed holder cannot block
        a run forever; an expired lease may be taken over.

        Returns:
            True if the lock was acquired, False if another owner holds it
        """

    @abstractmethod
    async def renew_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        """
        Extend ``owner``'s lease on the named lock by ``ttl_ms`` from now.

        Returns:
            True if ``owner`` still held the lock, False if it was lost
        """

    @abstractmethod
    async def release_lock(self, name: str, owner: str) -> None:
        """Release the lock if (and only if) ``owner`` still holds it."""

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        Warning: Destructive operation - only use in testing!
        """

    @abstractmethod
    async def close(self) -> None:
        """Close connections and clean up resources."""

    async def __aenter__(self) -> FlowStore:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
