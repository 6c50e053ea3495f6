"""Redis-based flow store implementation.

Provides a Redis backend for multi-machine deployments. Unlike SQLite, which
requires shared filesystem access, Redis lets workers on separate machines
tick runs of the same engine while the advisory lock keeps each run
single-writer.

Data Structures:
- tickflow:definitions (HASH): "flow_id@version" -> definition JSON
- tickflow:run:{run_id} (HASH): run row, JSON-encoded documents
- tickflow:runs:running (ZSET): RUNNING run ids (score = created_at millis)
- tickflow:events:{run_id} (LIST): timeline, one JSON entry per event
- tickflow:idem:{key} (STRING): recorded node result JSON
- tickflow:lock:... (STRING): advisory lock lease, value = owner token

Key Features:
- Atomic operations: MULTI/EXEC pipelines keep a run row and the running
  index consistent
- Leases: SET NX PX for acquisition, compare-and-PEXPIRE Lua for renewal,
  compare-and-delete Lua for release
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements FlowStore for Redis, adapting the key-value store to the
repository contracts.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as redis

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
from tickflow.models.run import UPDATABLE_RUN_FIELDS
from tickflow.storage.base import (
    FlowDefinitionRepo,
    FlowEventRepo,
    FlowRunRepo,
    FlowStore,
    IdempotencyRepo,
    StorageError,
)
from tickflow.storage.codec import dumps, from_millis, loads, to_millis

logger = logging.getLogger(__name__)

_PREFIX = "tickflow"
_DEFINITIONS_KEY = f"{_PREFIX}:definitions"
_RUNNING_KEY = f"{_PREFIX}:runs:running"

# Delete the lock only if the caller still owns it.
_RELEASE_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# Extend the lease only if the caller still owns it.
_RENEW_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""


def _run_key(run_id: str) -> str:
    return f"{_PREFIX}:run:{run_id}"


def _events_key(run_id: str) -> str:
    return f"{_PREFIX}:events:{run_id}"


def _idempotency_key(key: str) -> str:
    return f"{_PREFIX}:idem:{key}"


def _encode_run_field(name: str, value: Any) -> str:
    if name == "status":
        return FlowRunStatus(value).value
    if name in ("state", "outputs", "input"):
        return dumps(value)
    if name in ("created_at", "updated_at"):
        return str(to_millis(value))
    if name == "step":
        return str(int(value))
    # current_node_id / tenant_id: "" encodes None
    return "" if value is None else str(value)


class _RedisDefinitionRepo(FlowDefinitionRepo):
    def __init__(self, store: RedisFlowStore):
        self._store = store

    async def save(self, definition: FlowDefinition) -> None:
        client = self._store._client()
        await client.hset(_DEFINITIONS_KEY, definition.key, dumps(definition.to_json()))

    async def list(self) -> list[StoredDefinition]:
        client = self._store._client()
        raw = await client.hgetall(_DEFINITIONS_KEY)
        stored = []
        for value in raw.values():
            data = loads(value)
            stored.append(
                StoredDefinition(
                    flow_id=data["flowId"], version=data["version"], definition_json=data
                )
            )
        stored.sort(key=lambda d: (d.flow_id, d.version))
        return stored


class _RedisRunRepo(FlowRunRepo):
    def __init__(self, store: RedisFlowStore):
        self._store = store

    async def create(self, run: FlowRun) -> FlowRun:
        client = self._store._client()
        key = _run_key(run.run_id)
        mapping = {
            "run_id": run.run_id,
            "flow_id": run.flow_id,
            "flow_version": run.flow_version,
            "tenant_id": _encode_run_field("tenant_id", run.tenant_id),
            "status": _encode_run_field("status", run.status),
            "current_node_id": _encode_run_field("current_node_id", run.current_node_id),
            "input": _encode_run_field("input", run.input),
            "state": _encode_run_field("state", run.state),
            "outputs": _encode_run_field("outputs", run.outputs),
            "step": _encode_run_field("step", run.step),
            "created_at": _encode_run_field("created_at", run.created_at),
            "updated_at": _encode_run_field("updated_at", run.updated_at),
        }
        # HSETNX on run_id claims the key; a duplicate id fails here.
        created = await client.hsetnx(key, "run_id", run.run_id)
        if not created:
            raise StorageError(f"Run already exists: run_id={run.run_id}")

        async with client.pipeline(transaction=True) as pipe:
            await pipe.hset(key, mapping=mapping)
            if run.status == FlowRunStatus.RUNNING:
                await pipe.zadd(_RUNNING_KEY, {run.run_id: to_millis(run.created_at)})
            await pipe.execute()
        return await self._require(run.run_id)

    async def get(self, run_id: str) -> FlowRun | None:
        client = self._store._client()
        raw = await client.hgetall(_run_key(run_id))
        if not raw:
            return None
        return self._hash_to_run(raw)

    async def update(self, run_id: str, **fields: Any) -> FlowRun:
        unknown = set(fields) - UPDATABLE_RUN_FIELDS
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())

        client = self._store._client()
        key = _run_key(run_id)
        current = await client.hget(key, "created_at")
        if current is None:
            raise StorageError(f"Run not found: run_id={run_id}")

        mapping = {name: _encode_run_field(name, value) for name, value in fields.items()}
        async with client.pipeline(transaction=True) as pipe:
            await pipe.hset(key, mapping=mapping)
            if "status" in fields:
                if FlowRunStatus(fields["status"]) == FlowRunStatus.RUNNING:
                    await pipe.zadd(_RUNNING_KEY, {run_id: int(current)})
                else:
                    await pipe.zrem(_RUNNING_KEY, run_id)
            await pipe.execute()
        return await self._require(run_id)

    async def find_running(self) -> list[FlowRun]:
        client = self._store._client()
        run_ids = await client.zrange(_RUNNING_KEY, 0, -1)
        runs = []
        for run_id in run_ids:
            run = await self.get(run_id)
            if run is not None and run.status == FlowRunStatus.RUNNING:
                runs.append(run)
        return runs

    async def _require(self, run_id: str) -> FlowRun:
        run = await self.get(run_id)
        if run is None:
            raise StorageError(f"Failed to retrieve run: run_id={run_id}")
        return run

    @staticmethod
    def _hash_to_run(raw: dict[str, str]) -> FlowRun:
        return FlowRun(
            run_id=raw["run_id"],
            flow_id=raw["flow_id"],
            flow_version=raw["flow_version"],
            tenant_id=raw.get("tenant_id") or None,
            status=FlowRunStatus(raw["status"]),
            current_node_id=raw.get("current_node_id") or None,
            input=loads(raw.get("input")),
            state=loads(raw.get("state")) or {},
            outputs=loads(raw.get("outputs")) or {},
            step=int(raw.get("step", "0")),
            created_at=from_millis(int(raw["created_at"])),
            updated_at=from_millis(int(raw["updated_at"])),
        )


class _RedisEventRepo(FlowEventRepo):
    def __init__(self, store: RedisFlowStore):
        self._store = store

    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: dict[str, Any] | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> FlowEvent:
        client = self._store._client()
        key = _events_key(run_id)
        payload = payload or {}

        # Only the run's lock holder appends, so read-then-push is safe here.
        at_ms = to_millis(utcnow())
        last = await client.lindex(key, -1)
        if last is not None:
            at_ms = max(at_ms, loads(last)["at"])

        entry = {
            "type": type.value,
            "node_id": node_id,
            "attempt": attempt,
            "payload": payload,
            "at": at_ms,
        }
        seq = await client.rpush(key, dumps(entry))
        return FlowEvent(
            run_id=run_id,
            seq=seq,
            type=type,
            payload=payload,
            node_id=node_id,
            attempt=attempt,
            at=from_millis(at_ms),
        )

    async def get_timeline(self, run_id: str) -> list[FlowEvent]:
        client = self._store._client()
        entries = await client.lrange(_events_key(run_id), 0, -1)
        timeline = []
        for index, raw in enumerate(entries, start=1):
            entry = loads(raw)
            timeline.append(
                FlowEvent(
                    run_id=run_id,
                    seq=index,
                    type=EventType(entry["type"]),
                    payload=entry.get("payload") or {},
                    node_id=entry.get("node_id"),
                    attempt=entry.get("attempt"),
                    at=from_millis(entry["at"]),
                )
            )
        return timeline


class _RedisIdempotencyRepo(IdempotencyRepo):
    def __init__(self, store: RedisFlowStore):
        self._store = store

    async def get(self, key: str) -> IdempotencyRecord | None:
        client = self._store._client()
        raw = await client.get(_idempotency_key(key))
        if raw is None:
            return None
        data = loads(raw)
        return IdempotencyRecord(
            key=key,
            run_id=data["run_id"],
            node_id=data["node_id"],
            output=data.get("output"),
            patch=data.get("patch"),
            created_at=from_millis(data["created_at"]),
        )

    async def set(self, record: IdempotencyRecord) -> None:
        client = self._store._client()
        value = dumps(
            {
                "run_id": record.run_id,
                "node_id": record.node_id,
                "output": record.output,
                "patch": record.patch,
                "created_at": to_millis(record.created_at),
            }
        )
        await client.set(_idempotency_key(record.key), value, nx=True)


class RedisFlowStore(FlowStore):
    """Redis flow store using connection pooling.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        store = RedisFlowStore("redis://localhost:6379")
        await store.connect()
        engine = FlowEngine(store)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis flow store.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None
        self._release_script = None

        self.definitions = _RedisDefinitionRepo(self)
        self.runs = _RedisRunRepo(self)
        self.events = _RedisEventRepo(self)
        self.idempotency = _RedisIdempotencyRepo(self)

    def __repr__(self) -> str:
        return f"RedisFlowStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )
        self._release_script = self._redis.register_script(_RELEASE_LOCK_LUA)
        self._renew_script = self._redis.register_script(_RENEW_LOCK_LUA)
        logger.debug(f"Connected {self!r}")

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._release_script = None
            self._renew_script = None

    async def acquire_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        client = self._client()
        acquired = await client.set(name, owner, nx=True, px=ttl_ms)
        return bool(acquired)

    async def renew_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        self._client()
        renewed = await self._renew_script(keys=[name], args=[owner, ttl_ms])
        return bool(renewed)

    async def release_lock(self, name: str, owner: str) -> None:
        self._client()
        await self._release_script(keys=[name], args=[owner])

    async def reset(self) -> None:
        """Delete every tickflow key (for testing/demos)."""
        client = self._client()
        async for key in client.scan_iter(match=f"{_PREFIX}:*"):
            await client.delete(key)

    def _client(self) -> redis.Redis:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._redis


__all__ = ["RedisFlowStore"]
