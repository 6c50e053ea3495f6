"""
Node execution.

execute_node() runs one node for one tick and normalizes whatever happens
into the three-way NodeResult contract (Ok, Wait, Error). Handler failures
never propagate out of it; storage failures do.

Per tick:
1. NODE_STARTED is appended.
2. The idempotency store is consulted. A hit replays the recorded Ok
   (``cached=True``) without invoking the handler.
3. Otherwise the handler runs, under the timeout guard when the node has a
   ``timeout_ms``, up to ``retry.max_attempts`` times.
4. Ok results are recorded; Wait results are not, so a resumed run
   re-enters the handler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from tickflow.engine.idempotency import (
    check_idempotency,
    idempotency_key_for,
    store_idempotency,
)
from tickflow.engine.timeout import with_timeout
from tickflow.models import (
    Error,
    EventType,
    FlowContext,
    NodeDefinition,
    NodeError,
    NodeResult,
    Ok,
    Wait,
)
from tickflow.storage.base import FlowEventRepo, IdempotencyRepo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Execution:
    """Outcome of execute_node()."""

    result: NodeResult
    cached: bool = False


def _invalid_result(node: NodeDefinition, value: object) -> Error:
    return Error(
        error=NodeError(
            code="INVALID_RESULT",
            message=f"Node {node.id} returned {type(value).__name__}, expected Ok, Wait or Error",
            retryable=False,
        )
    )


async def _invoke(node: NodeDefinition, ctx: FlowContext) -> object:
    call = node.handler(ctx)
    if node.timeout_ms:
        return await with_timeout(call, node.timeout_ms, node.id)
    return await call


async def _backoff(node: NodeDefinition, attempt: int) -> None:
    delay_ms = node.retry.delay_for_attempt(attempt) if node.retry else None
    if delay_ms:
        logger.warning(f"Retrying node {node.id} in {delay_ms}ms (attempt {attempt} failed)")
        await asyncio.sleep(delay_ms / 1000.0)


async def execute_node(
    node: NodeDefinition,
    ctx: FlowContext,
    events: FlowEventRepo,
    idempotency: IdempotencyRepo,
) -> Execution:
    """
    Execute ``node`` once for the current tick.

    Args:
        node: Node to run
        ctx: Execution context; ``ctx.meta.attempts`` is updated in place
        events: Timeline the node-level events are appended to
        idempotency: Store of prior Ok results

    Returns:
        Execution with the normalized result and whether it was replayed
    """
    attempt = ctx.meta.attempts.get(node.id, 0) + 1
    ctx.meta.attempts[node.id] = attempt

    await events.append(
        ctx.run_id,
        EventType.NODE_STARTED,
        {"nodeId": node.id, "attempt": attempt},
        node_id=node.id,
        attempt=attempt,
    )

    key = idempotency_key_for(node, ctx)
    record = await check_idempotency(idempotency, key)
    if record is not None:
        await events.append(
            ctx.run_id,
            EventType.NODE_FINISHED,
            {"nodeId": node.id, "attempt": attempt, "cached": True},
            node_id=node.id,
            attempt=attempt,
        )
        return Execution(Ok(output=record.output, patch=record.patch), cached=True)

    max_attempts = node.retry.max_attempts if node.retry else 1
    last_error = NodeError(code="UNKNOWN", message="Max retries exceeded")

    for try_number in range(1, max_attempts + 1):
        final = try_number == max_attempts
        try:
            result = await _invoke(node, ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = NodeError.from_exception(e)
            retryable = last_error.code == "TIMEOUT"
            logger.debug(f"Node {node.id} raised {last_error.code}: {last_error.message}")
            await events.append(
                ctx.run_id,
                EventType.NODE_FAILED,
                {"nodeId": node.id, "attempt": try_number, "error": last_error.to_dict()},
                node_id=node.id,
                attempt=try_number,
            )
            if retryable and node.retry is not None and not final:
                await _backoff(node, try_number)
                continue
            return Execution(Error(error=last_error))

        if not isinstance(result, (Ok, Wait, Error)):
            result = _invalid_result(node, result)

        if isinstance(result, (Ok, Wait)):
            if isinstance(result, Ok):
                await store_idempotency(
                    idempotency, key, ctx.run_id, node.id, result.output, result.patch
                )
            await events.append(
                ctx.run_id,
                EventType.NODE_FINISHED,
                {"nodeId": node.id, "attempt": try_number, "cached": False},
                node_id=node.id,
                attempt=try_number,
            )
            logger.debug(f"Node {node.id} finished with {result.status} (attempt {try_number})")
            return Execution(result)

        last_error = result.error
        await events.append(
            ctx.run_id,
            EventType.NODE_FAILED,
            {"nodeId": node.id, "attempt": try_number, "error": last_error.to_dict()},
            node_id=node.id,
            attempt=try_number,
        )
        if not last_error.is_retryable or final:
            return Execution(result)
        await _backoff(node, try_number)

    return Execution(Error(error=last_error))
