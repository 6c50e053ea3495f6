"""
Idempotency keys and the record/replay helpers around them.

A node's ``ok`` result is recorded under a key derived from
``(run_id, node_id, step)``. A retried tick for the same logical step (for
example after a crash between running the handler and persisting the run)
finds the record and replays it instead of re-invoking the handler.

``step`` counts cursor advances, so a loop that revisits a node gets a new
key on every visit.
"""

from __future__ import annotations

import logging
from typing import Any

import xxhash

from tickflow.models import FlowContext, IdempotencyRecord, NodeDefinition, utcnow
from tickflow.storage.base import IdempotencyRepo

logger = logging.getLogger(__name__)


def default_idempotency_key(run_id: str, node_id: str, step: int) -> str:
    """
    Stable key for one logical execution of a node.

    Uses xxHash: deterministic across platforms and processes, which is all
    a replay key needs (it is not a security boundary).
    """
    digest = xxhash.xxh3_128_hexdigest(f"{run_id}\x00{node_id}\x00{step}".encode())
    return f"{node_id}:{digest}"


def idempotency_key_for(node: NodeDefinition, ctx: FlowContext) -> str:
    if node.idempotency_key is not None:
        return node.idempotency_key(ctx)
    return default_idempotency_key(ctx.run_id, node.id, ctx.meta.step)


async def check_idempotency(repo: IdempotencyRepo, key: str) -> IdempotencyRecord | None:
    record = await repo.get(key)
    if record is not None:
        logger.debug(f"Idempotency hit: key={key}, node={record.node_id}")
    return record


async def store_idempotency(
    repo: IdempotencyRepo,
    key: str,
    run_id: str,
    node_id: str,
    output: Any,
    patch: dict[str, Any] | None,
) -> None:
    await repo.set(
        IdempotencyRecord(
            key=key,
            run_id=run_id,
            node_id=node_id,
            output=output,
            patch=patch,
            created_at=utcnow(),
        )
    )
