"""Engine configuration.

Settings are read from ``TICKFLOW_*`` environment variables and an optional
``.env`` file, e.g.::

    TICKFLOW_STORAGE_BACKEND=sqlite
    TICKFLOW_SQLITE_PATH=data/flows.db
    TICKFLOW_LOCK_TTL_MS=60000
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tickflow.storage.base import FlowStore

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Configuration for the flow engine, its store and the runner."""

    storage_backend: Literal["memory", "sqlite", "redis"] = Field(
        default="memory",
        description="Storage adapter used by create_store()",
    )
    sqlite_path: str = Field(
        default="tickflow.db",
        description="SQLite database file, or ':memory:'",
    )
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    redis_max_connections: int = Field(
        default=16,
        gt=0,
        description="Redis connection pool size",
    )

    # Advisory lock
    lock_ttl_ms: int = Field(
        default=30_000,
        gt=0,
        description="Lease length of a run lock; a crashed holder loses it after this",
    )
    lock_acquire_timeout_ms: int = Field(
        default=10_000,
        ge=0,
        description="How long tick()/resume_run() wait for a busy run lock",
    )
    lock_poll_interval_ms: int = Field(
        default=20,
        gt=0,
        description="Delay between lock acquisition attempts",
    )

    default_node_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        description="Timeout applied to nodes that do not set timeout_ms (None = no limit)",
    )

    # Runner
    runner_poll_interval: float = Field(
        default=1.0,
        gt=0.0,
        description="Seconds between runner polls when idle",
    )
    runner_max_concurrency: int = Field(
        default=10,
        gt=0,
        description="Maximum runs the runner ticks concurrently",
    )

    model_config = SettingsConfigDict(
        env_prefix="TICKFLOW_",
        env_file=".env",
        extra="ignore",
    )


def create_store(settings: EngineSettings | None = None) -> FlowStore:
    """
    Build the store selected by ``settings.storage_backend``.

    The store is returned unconnected; call ``connect()`` (or use it as an
    async context manager) before handing it to FlowEngine.
    """
    settings = settings or EngineSettings()
    backend = settings.storage_backend
    logger.debug(f"Creating {backend} store")

    if backend == "sqlite":
        from tickflow.storage.sqlite import SqliteFlowStore

        return SqliteFlowStore(settings.sqlite_path)
    if backend == "redis":
        from tickflow.storage.redis import RedisFlowStore

        return RedisFlowStore(settings.redis_url, max_connections=settings.redis_max_connections)

    from tickflow.storage.memory import InMemoryFlowStore

    return InMemoryFlowStore()
