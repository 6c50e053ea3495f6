"""In-memory storage implementation for tickflow.

Design Pattern: Adapter Pattern
InMemoryFlowStore adapts in-memory dictionaries to the FlowStore interface.

Instance is immediately usable after __init__. Data lives only as long as
the process, so this backend suits tests and single-process deployments.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import defaultdict
from typing import Any

from tickflow.models import (
    EventType,
    FlowDefinition,
    FlowEvent,
    FlowRun,
    FlowRunStatus,
    IdempotencyRecord,
    StoredDefinition,
    utcnow,
)
from tickflow.storage.base import (
    FlowDefinitionRepo,
    FlowEventRepo,
    FlowRunRepo,
    FlowStore,
    IdempotencyRepo,
    StorageError,
)

logger = logging.getLogger(__name__)


class _MemoryDefinitionRepo(FlowDefinitionRepo):
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock
        # Storage: {(flow_id, version): definition_json}
        self._definitions: dict[tuple[str, str], dict[str, Any]] = {}

    async def save(self, definition: FlowDefinition) -> None:
        async with self._lock:
            self._definitions[(definition.flow_id, definition.version)] = definition.to_json()

    async def list(self) -> list[StoredDefinition]:
        async with self._lock:
            return [
                StoredDefinition(flow_id=fid, version=ver, definition_json=copy.deepcopy(data))
                for (fid, ver), data in sorted(self._definitions.items())
            ]


class _MemoryRunRepo(FlowRunRepo):
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock
        # Storage: {run_id: FlowRun}
        self._runs: dict[str, FlowRun] = {}

    async def create(self, run: FlowRun) -> FlowRun:
        async with self._lock:
            if run.run_id in self._runs:
                raise StorageError(f"Run already exists: run_id={run.run_id}")
            self._runs[run.run_id] = copy.deepcopy(run)
            return copy.deepcopy(run)

    async def get(self, run_id: str) -> FlowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run is not None else None

    async def update(self, run_id: str, **fields: Any) -> FlowRun:
        async with self._lock:
            if run_id not in self._runs:
                raise StorageError(f"Run not found: run_id={run_id}")
            updated = self._runs[run_id].with_updates(**copy.deepcopy(fields))
            self._runs[run_id] = updated
            return copy.deepcopy(updated)

    async def find_running(self) -> list[FlowRun]:
        async with self._lock:
            running = [r for r in self._runs.values() if r.status == FlowRunStatus.RUNNING]
            running.sort(key=lambda r: r.created_at)
            return [copy.deepcopy(r) for r in running]


class _MemoryEventRepo(FlowEventRepo):
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock
        # Storage: {run_id: [FlowEvent, ...]} in append order
        self._events: dict[str, list[FlowEvent]] = defaultdict(list)

    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: dict[str, Any] | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> FlowEvent:
        async with self._lock:
            timeline = self._events[run_id]
            at = utcnow()
            if timeline and at < timeline[-1].at:
                at = timeline[-1].at
            event = FlowEvent(
                run_id=run_id,
                seq=len(timeline) + 1,
                type=type,
                payload=copy.deepcopy(payload) if payload else {},
                node_id=node_id,
                attempt=attempt,
                at=at,
            )
            timeline.append(event)
            return event

    async def get_timeline(self, run_id: str) -> list[FlowEvent]:
        async with self._lock:
            return list(self._events.get(run_id, []))


class _MemoryIdempotencyRepo(IdempotencyRepo):
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock
        self._records: dict[str, IdempotencyRecord] = {}

    async def get(self, key: str) -> IdempotencyRecord | None:
        async with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record) if record is not None else None

    async def set(self, record: IdempotencyRecord) -> None:
        async with self._lock:
            self._records.setdefault(record.key, copy.deepcopy(record))


class InMemoryFlowStore(FlowStore):
    """In-memory storage for testing.

    Can be substituted for SqliteFlowStore without changing client code.
    Advisory locks are process-local: they serialize concurrent coroutines
    of this process, which is all a single-node deployment needs.

    Usage:
        store = InMemoryFlowStore()
        engine = FlowEngine(store)
    """

    def __init__(self):
        # One lock serializes access to all dictionaries
        self._lock = asyncio.Lock()

        self.definitions = _MemoryDefinitionRepo(self._lock)
        self.runs = _MemoryRunRepo(self._lock)
        self.events = _MemoryEventRepo(self._lock)
        self.idempotency = _MemoryIdempotencyRepo(self._lock)

        # Advisory locks: {name: (owner, expires_at monotonic seconds)}
        self._leases: dict[str, tuple[str, float]] = {}

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return "InMemoryFlowStore"

    async def acquire_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        async with self._lock:
            now = time.monotonic()
            held = self._leases.get(name)
            if held is not None and held[0] != owner and held[1] > now:
                return False
            if held is not None and held[0] != owner:
                logger.debug(f"Lock {name} expired for {held[0]}, taken over by {owner}")
            self._leases[name] = (owner, now + ttl_ms / 1000.0)
            return True

    async def renew_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        async with self._lock:
            held = self._leases.get(name)
            if held is None or held[0] != owner:
                return False
            self._leases[name] = (owner, time.monotonic() + ttl_ms / 1000.0)
            return True

    async def release_lock(self, name: str, owner: str) -> None:
        async with self._lock:
            held = self._leases.get(name)
            if held is not None and held[0] == owner:
                del self._leases[name]

    async def reset(self) -> None:
        async with self._lock:
            self.definitions._definitions.clear()
            self.runs._runs.clear()
            self.events._events.clear()
            self.idempotency._records.clear()
            self._leases.clear()

    async def close(self) -> None:
        pass
