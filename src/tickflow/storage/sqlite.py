"""SQLite-backed storage implementation for tickflow.

Design Pattern: Adapter Pattern
SqliteFlowStore adapts a SQLite database to the FlowStore interface.

Complex database logic is isolated here, not scattered across the engine.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Autocommit connection; every write is a single atomic statement
- Advisory locks are lease rows in ``flow_locks``, so workers in separate
  processes sharing the database file serialize on the same run
- INTEGER millisecond timestamps
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

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

_RUN_COLUMNS = (
    "run_id, flow_id, flow_version, tenant_id, status, current_node_id, "
    "input_json, state_json, outputs_json, step, created_at, updated_at"
)

# FlowRun attribute -> (column, encoder)
_RUN_UPDATE_COLUMNS: dict[str, tuple[str, Any]] = {
    "status": ("status", lambda v: FlowRunStatus(v).value),
    "current_node_id": ("current_node_id", lambda v: v),
    "state": ("state_json", dumps),
    "outputs": ("outputs_json", dumps),
    "step": ("step", int),
    "updated_at": ("updated_at", to_millis),
}


class _SqliteDefinitionRepo(FlowDefinitionRepo):
    def __init__(self, store: SqliteFlowStore):
        self._store = store

    async def save(self, definition: FlowDefinition) -> None:
        await self._store._execute(
            """
            INSERT INTO flow_definitions (flow_id, version, definition_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(flow_id, version)
            DO UPDATE SET definition_json = excluded.definition_json,
                          updated_at = excluded.updated_at
        """,
            (
                definition.flow_id,
                definition.version,
                dumps(definition.to_json()),
                to_millis(utcnow()),
            ),
        )

    async def list(self) -> list[StoredDefinition]:
        rows = await self._store._fetchall(
            """
            SELECT flow_id, version, definition_json
            FROM flow_definitions
            ORDER BY flow_id ASC, version ASC
        """
        )
        return [
            StoredDefinition(flow_id=row[0], version=row[1], definition_json=loads(row[2]))
            for row in rows
        ]


class _SqliteRunRepo(FlowRunRepo):
    def __init__(self, store: SqliteFlowStore):
        self._store = store

    async def create(self, run: FlowRun) -> FlowRun:
        try:
            await self._store._execute(
                f"""
                INSERT INTO flow_runs ({_RUN_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    run.run_id,
                    run.flow_id,
                    run.flow_version,
                    run.tenant_id,
                    run.status.value,
                    run.current_node_id,
                    dumps(run.input),
                    dumps(run.state),
                    dumps(run.outputs),
                    run.step,
                    to_millis(run.created_at),
                    to_millis(run.updated_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Run already exists: run_id={run.run_id}") from e
        return await self._require(run.run_id)

    async def get(self, run_id: str) -> FlowRun | None:
        rows = await self._store._fetchall(
            f"SELECT {_RUN_COLUMNS} FROM flow_runs WHERE run_id = ?", (run_id,)
        )
        if not rows:
            return None
        return self._row_to_run(rows[0])

    async def update(self, run_id: str, **fields: Any) -> FlowRun:
        unknown = set(fields) - UPDATABLE_RUN_FIELDS
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())

        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            column, encode = _RUN_UPDATE_COLUMNS[name]
            assignments.append(f"{column} = ?")
            params.append(encode(value) if value is not None else None)
        params.append(run_id)

        rowcount = await self._store._execute(
            f"UPDATE flow_runs SET {', '.join(assignments)} WHERE run_id = ?",
            tuple(params),
        )
        if rowcount == 0:
            raise StorageError(f"Run not found: run_id={run_id}")
        return await self._require(run_id)

    async def find_running(self) -> list[FlowRun]:
        rows = await self._store._fetchall(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM flow_runs
            WHERE status = 'RUNNING'
            ORDER BY created_at ASC, run_id ASC
        """
        )
        return [self._row_to_run(row) for row in rows]

    async def _require(self, run_id: str) -> FlowRun:
        run = await self.get(run_id)
        if run is None:
            raise StorageError(f"Failed to retrieve run: run_id={run_id}")
        return run

    @staticmethod
    def _row_to_run(row: tuple) -> FlowRun:
        """Convert database row to FlowRun.

        Row format (matches _RUN_COLUMNS):
        0:run_id, 1:flow_id, 2:flow_version, 3:tenant_id, 4:status,
        5:current_node_id, 6:input_json, 7:state_json, 8:outputs_json,
        9:step, 10:created_at, 11:updated_at
        """
        return FlowRun(
            run_id=row[0],
            flow_id=row[1],
            flow_version=row[2],
            tenant_id=row[3],
            status=FlowRunStatus(row[4]),
            current_node_id=row[5],
            input=loads(row[6]),
            state=loads(row[7]) or {},
            outputs=loads(row[8]) or {},
            step=row[9],
            created_at=from_millis(row[10]),
            updated_at=from_millis(row[11]),
        )


class _SqliteEventRepo(FlowEventRepo):
    def __init__(self, store: SqliteFlowStore):
        self._store = store

    async def append(
        self,
        run_id: str,
        type: EventType,
        payload: dict[str, Any] | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> FlowEvent:
        now_ms = to_millis(utcnow())
        payload = payload or {}

        # seq and the clamped timestamp are computed in the same statement,
        # so the row is consistent even with other connections writing.
        row = await self._store._fetchone(
            """
            INSERT INTO flow_events (run_id, seq, type, node_id, attempt, payload_json, at)
            SELECT ?,
                   COALESCE(MAX(seq), 0) + 1,
                   ?, ?, ?, ?,
                   MAX(?, COALESCE(MAX(at), 0))
            FROM flow_events
            WHERE run_id = ?
            RETURNING seq, at
        """,
            (run_id, type.value, node_id, attempt, dumps(payload), now_ms, run_id),
        )
        if row is None:
            raise StorageError(f"Failed to append event: run_id={run_id}, type={type}")

        return FlowEvent(
            run_id=run_id,
            seq=row[0],
            type=type,
            payload=payload,
            node_id=node_id,
            attempt=attempt,
            at=from_millis(row[1]),
        )

    async def get_timeline(self, run_id: str) -> list[FlowEvent]:
        rows = await self._store._fetchall(
            """
            SELECT run_id, seq, type, node_id, attempt, payload_json, at
            FROM flow_events
            WHERE run_id = ?
            ORDER BY seq ASC
        """,
            (run_id,),
        )
        return [
            FlowEvent(
                run_id=row[0],
                seq=row[1],
                type=EventType(row[2]),
                node_id=row[3],
                attempt=row[4],
                payload=loads(row[5]) or {},
                at=from_millis(row[6]),
            )
            for row in rows
        ]


class _SqliteIdempotencyRepo(IdempotencyRepo):
    def __init__(self, store: SqliteFlowStore):
        self._store = store

    async def get(self, key: str) -> IdempotencyRecord | None:
        row = await self._store._fetchone(
            """
            SELECT key, run_id, node_id, output_json, patch_json, created_at
            FROM flow_idempotency
            WHERE key = ?
        """,
            (key,),
        )
        if row is None:
            return None
        return IdempotencyRecord(
            key=row[0],
            run_id=row[1],
            node_id=row[2],
            output=loads(row[3]),
            patch=loads(row[4]),
            created_at=from_millis(row[5]),
        )

    async def set(self, record: IdempotencyRecord) -> None:
        await self._store._execute(
            """
            INSERT INTO flow_idempotency (key, run_id, node_id, output_json, patch_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING
        """,
            (
                record.key,
                record.run_id,
                record.node_id,
                dumps(record.output),
                dumps(record.patch) if record.patch is not None else None,
                to_millis(record.created_at),
            ),
        )


class SqliteFlowStore(FlowStore):
    """SQLite-backed durable storage.

    Design Principles Applied:
    - Single Responsibility: Only handles persistence (doesn't execute nodes)
    - Dependency Inversion: Implements the FlowStore contract

    After __init__, the instance is not yet usable. Call connect() first
    (no async in __init__).

    Usage:
        store = SqliteFlowStore("flows.db")
        await store.connect()
        try:
            engine = FlowEngine(store)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

        self.definitions = _SqliteDefinitionRepo(self)
        self.runs = _SqliteRunRepo(self)
        self.events = _SqliteEventRepo(self)
        self.idempotency = _SqliteIdempotencyRepo(self)

    @classmethod
    async def in_memory(cls) -> SqliteFlowStore:
        """
        Create an in-memory SQLite store for testing.

        Convenience factory that creates storage with ":memory:" path
        and automatically calls connect().

        Example:
            store = await SqliteFlowStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        if self.db_path == ":memory:":
            return "SqliteFlowStore(in-memory)"
        return f"SqliteFlowStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode for better concurrency
        )

        # Note: In-memory databases return "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()

        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        logger.debug(f"Connected {self!r}")

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - flow_definitions: JSON description per (flow_id, version)
        - flow_runs: one row per run, JSON documents for input/state/outputs
        - flow_events: append-only timeline, (run_id, seq) primary key
        - flow_idempotency: recorded ok results keyed by idempotency key
        - flow_locks: advisory lock leases
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flow_definitions (
                flow_id TEXT NOT NULL,
                version TEXT NOT NULL,
                definition_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (flow_id, version)
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flow_runs (
                run_id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                flow_version TEXT NOT NULL,
                tenant_id TEXT,
                status TEXT CHECK( status IN (
                    'RUNNING','WAITING','COMPLETED','FAILED'
                ) ) NOT NULL,
                current_node_id TEXT,
                input_json TEXT,
                state_json TEXT NOT NULL DEFAULT '{}',
                outputs_json TEXT NOT NULL DEFAULT '{}',
                step INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_flow_runs_status
            ON flow_runs(status, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flow_events (
                run_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                type TEXT NOT NULL,
                node_id TEXT,
                attempt INTEGER,
                payload_json TEXT NOT NULL DEFAULT '{}',
                at INTEGER NOT NULL,
                PRIMARY KEY (run_id, seq)
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flow_idempotency (
                key TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                output_json TEXT,
                patch_json TEXT,
                created_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_flow_idempotency_run
            ON flow_idempotency(run_id)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flow_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at INTEGER NOT NULL
            )
        """)

    async def acquire_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        """Take or renew a lease row.

        The upsert only overwrites a row whose lease has expired or that
        already belongs to ``owner``; the follow-up read tells whether this
        caller ended up holding the lock.
        """
        now_ms = to_millis(utcnow())
        await self._execute(
            """
            INSERT INTO flow_locks (name, owner, expires_at)
            VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                owner = excluded.owner,
                expires_at = excluded.expires_at
            WHERE flow_locks.expires_at <= ? OR flow_locks.owner = excluded.owner
        """,
            (name, owner, now_ms + ttl_ms, now_ms),
        )
        row = await self._fetchone("SELECT owner FROM flow_locks WHERE name = ?", (name,))
        return row is not None and row[0] == owner

    async def renew_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        updated = await self._execute(
            "UPDATE flow_locks SET expires_at = ? WHERE name = ? AND owner = ?",
            (to_millis(utcnow()) + ttl_ms, name, owner),
        )
        return updated > 0

    async def release_lock(self, name: str, owner: str) -> None:
        await self._execute(
            "DELETE FROM flow_locks WHERE name = ? AND owner = ?",
            (name, owner),
        )

    async def reset(self) -> None:
        """Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        self._check_connected()
        async with self._lock:
            for table in (
                "flow_definitions",
                "flow_runs",
                "flow_events",
                "flow_idempotency",
                "flow_locks",
            ):
                await self._connection.execute(f"DELETE FROM {table}")

    async def close(self) -> None:
        """Close storage connections.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ========================================================================
    # Connection helpers
    # ========================================================================

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(sql, params)
                rowcount = cursor.rowcount
                await cursor.close()
                return rowcount
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                raise StorageError(f"SQLite error: {e}") from e

    async def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(sql, params)
                row = await cursor.fetchone()
                await cursor.close()
                return row
            except sqlite3.Error as e:
                raise StorageError(f"SQLite error: {e}") from e

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(sql, params)
                rows = await cursor.fetchall()
                await cursor.close()
                return list(rows)
            except sqlite3.Error as e:
                raise StorageError(f"SQLite error: {e}") from e
