"""
Pytest configuration and fixtures for tickflow tests.

Provides reusable fixtures for storage backends and engines.
"""

import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from tickflow.config import EngineSettings
from tickflow.engine import FlowEngine
from tickflow.storage import FlowStore, InMemoryFlowStore, SqliteFlowStore


@pytest.fixture
def engine_settings() -> EngineSettings:
    """Settings with short lock polling so contention tests stay fast."""
    return EngineSettings(
        storage_backend="memory",
        lock_ttl_ms=5_000,
        lock_acquire_timeout_ms=2_000,
        lock_poll_interval_ms=2,
        runner_poll_interval=0.01,
    )


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryFlowStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryFlowStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteFlowStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteFlowStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteFlowStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteFlowStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request) -> AsyncGenerator[FlowStore, None]:
    """Every locally available backend, for contract parity tests."""
    if request.param == "memory":
        backend: FlowStore = InMemoryFlowStore()
    else:
        backend = SqliteFlowStore(":memory:")
    await backend.connect()
    yield backend
    await backend.close()


@pytest.fixture
async def engine(store: FlowStore, engine_settings: EngineSettings) -> FlowEngine:
    """FlowEngine over each backend."""
    return FlowEngine(store, services={"clock": "test"}, settings=engine_settings)
