"""
Deadline guard for node handlers.

with_timeout() races a handler against a per-node deadline. On expiry it
stops waiting and raises NodeTimeoutError (code ``TIMEOUT``) so the retry
policy can special-case it.

The semantic is *detach*, not *cancel*: the handler task keeps running in
the background after the deadline. Its eventual result is discarded and an
eventual exception is consumed and logged at debug level, so it never
surfaces as "Task exception was never retrieved". Cancelling the caller
does cancel the handler task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from tickflow.errors import NodeTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Detached tasks are referenced here until they finish.
_detached: set[asyncio.Task] = set()


def _consume_detached(task: asyncio.Task) -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Detached task {task.get_name()} failed after timeout: {exc!r}")


async def with_timeout(awaitable: Awaitable[T], timeout_ms: int, node_id: str) -> T:
    """
    Await ``awaitable`` for at most ``timeout_ms`` milliseconds.

    Args:
        awaitable: Coroutine or future producing the node result
        timeout_ms: Deadline in milliseconds
        node_id: Node identifier, carried by the timeout error

    Returns:
        The awaitable's result if it finishes in time

    Raises:
        NodeTimeoutError: If the deadline expires first
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    logger.warning(f"Node {node_id} exceeded {timeout_ms}ms, detaching handler")
    _detached.add(task)
    task.add_done_callback(_consume_detached)
    raise NodeTimeoutError(node_id, timeout_ms)
