"""
Per-run advisory lock.

Every mutating engine operation on a run happens inside advisory_lock(),
so two workers ticking the same run serialize instead of interleaving.
Different runs use different lock names and never contend.

The lock is a lease held in the store (see FlowStore.acquire_lock): each
acquisition uses a fresh owner token, so only the holder can release it, and
a holder that crashed without releasing loses the lease after ``ttl_ms``.
While the ``async with`` block runs, a heartbeat task renews the lease every
``ttl_ms / 3``, so a slow node handler keeps its run locked. A holder whose
lease was lost anyway (a stalled event loop, a store outage) finds out
through LockLease.confirm() before it writes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from typing import TypeVar

from uuid_extensions import uuid7

from tickflow.errors import LockLostError, LockTimeoutError
from tickflow.storage.base import FlowStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TTL_MS = 30_000
DEFAULT_ACQUIRE_TIMEOUT_MS = 10_000
DEFAULT_POLL_INTERVAL_MS = 20


def run_lock_name(run_id: str) -> str:
    return f"tickflow:lock:run:{run_id}"


class LockLease:
    """A held run lock, kept alive by a heartbeat until released."""

    def __init__(self, store: FlowStore, name: str, owner: str, ttl_ms: int):
        self._store = store
        self.name = name
        self.owner = owner
        self.ttl_ms = ttl_ms
        self._lost = False

    def __repr__(self) -> str:
        return f"LockLease(name={self.name!r}, owner={self.owner!r}, lost={self._lost})"

    @property
    def lost(self) -> bool:
        return self._lost

    async def renew(self) -> bool:
        """Extend the lease once. Returns False (and marks it lost) if it was taken."""
        if self._lost:
            return False
        if not await self._store.renew_lock(self.name, self.owner, self.ttl_ms):
            self._lost = True
            logger.warning(f"Lost lock {self.name} (owner {self.owner})")
        return not self._lost

    async def confirm(self) -> None:
        """
        Renew the lease and fail if this holder no longer owns it.

        Call right before persisting run changes.

        Raises:
            LockLostError: If the lease expired and may have been taken over
        """
        if not await self.renew():
            raise LockLostError(self.name)

    async def _heartbeat(self) -> None:
        interval = self.ttl_ms / 3000.0
        while not self._lost:
            await asyncio.sleep(interval)
            try:
                await self.renew()
            except Exception as e:
                # The next renewal or confirm() retries; the TTL covers the gap.
                logger.warning(f"Renewing lock {self.name} failed: {e}")


@asynccontextmanager
async def advisory_lock(
    store: FlowStore,
    run_id: str,
    *,
    ttl_ms: int = DEFAULT_LOCK_TTL_MS,
    acquire_timeout_ms: int = DEFAULT_ACQUIRE_TIMEOUT_MS,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
) -> AsyncIterator[LockLease]:
    """
    Hold the run's lock for the duration of the ``async with`` block.

    Yields the LockLease. The lease is renewed in the background and
    released on every exit path, including exceptions and cancellation.

    Raises:
        LockTimeoutError: If the lock is not acquired within
            ``acquire_timeout_ms``
    """
    name = run_lock_name(run_id)
    owner = str(uuid7())
    deadline = time.monotonic() + acquire_timeout_ms / 1000.0
    contended = False

    while not await store.acquire_lock(name, owner, ttl_ms):
        if not contended:
            logger.debug(f"Lock {name} is held, waiting")
            contended = True
        if time.monotonic() >= deadline:
            logger.warning(f"Gave up on lock {name} after {acquire_timeout_ms}ms")
            raise LockTimeoutError(name, acquire_timeout_ms)
        await asyncio.sleep(poll_interval_ms / 1000.0)

    lease = LockLease(store, name, owner, ttl_ms)
    heartbeat = asyncio.create_task(lease._heartbeat(), name=f"heartbeat:{name}")
    try:
        yield lease
    finally:
        heartbeat.cancel()
        with suppress(asyncio.CancelledError):
            await heartbeat
        # Shielded so a cancelled holder still frees the lease.
        await asyncio.shield(store.release_lock(name, owner))


async def with_advisory_lock(
    store: FlowStore,
    run_id: str,
    fn: Callable[[], Awaitable[T]],
    **options: int,
) -> T:
    """Run ``fn`` while holding the run's lock and return its result."""
    async with advisory_lock(store, run_id, **options):
        return await fn()
