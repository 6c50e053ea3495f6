"""Tests for EngineSettings and create_store()."""

import os

import pytest
from pydantic import ValidationError

from tickflow.config import EngineSettings, create_store
from tickflow.storage import InMemoryFlowStore, SqliteFlowStore


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep host TICKFLOW_* variables and any .env file out of the tests."""
    for name in list(os.environ):
        if name.startswith("TICKFLOW_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = EngineSettings()

    assert settings.storage_backend == "memory"
    assert settings.lock_ttl_ms == 30_000
    assert settings.lock_acquire_timeout_ms == 10_000
    assert settings.default_node_timeout_ms is None
    assert settings.runner_max_concurrency == 10


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TICKFLOW_STORAGE_BACKEND", "sqlite")
    monkeypatch.setenv("TICKFLOW_SQLITE_PATH", "flows.db")
    monkeypatch.setenv("TICKFLOW_LOCK_TTL_MS", "60000")
    monkeypatch.setenv("TICKFLOW_DEFAULT_NODE_TIMEOUT_MS", "250")

    settings = EngineSettings()

    assert settings.storage_backend == "sqlite"
    assert settings.sqlite_path == "flows.db"
    assert settings.lock_ttl_ms == 60_000
    assert settings.default_node_timeout_ms == 250


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("TICKFLOW_RUNNER_POLL_INTERVAL=0.25\n")

    assert EngineSettings().runner_poll_interval == 0.25


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("TICKFLOW_STORAGE_BACKEND", "postgres")
    with pytest.raises(ValidationError):
        EngineSettings()


def test_non_positive_ttl_is_rejected():
    with pytest.raises(ValidationError):
        EngineSettings(lock_ttl_ms=0)


def test_create_memory_store():
    assert isinstance(create_store(EngineSettings(storage_backend="memory")), InMemoryFlowStore)


@pytest.mark.asyncio
async def test_create_sqlite_store(tmp_path):
    path = tmp_path / "flows.db"
    store = create_store(EngineSettings(storage_backend="sqlite", sqlite_path=str(path)))

    assert isinstance(store, SqliteFlowStore)
    async with store:
        assert await store.runs.find_running() == []
    assert path.exists()
