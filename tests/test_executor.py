"""
Tests for the node executor: retries, timeouts, idempotent replay and
result normalization.
"""

import asyncio

import pytest

from tickflow.engine.executor import execute_node
from tickflow.engine.idempotency import default_idempotency_key
from tickflow.errors import FlowError
from tickflow.models import (
    Error,
    EventType,
    FlowContext,
    NodeDefinition,
    Ok,
    RetryPolicy,
    RunMeta,
    Wait,
    error,
    ok,
    wait,
)

FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay_ms=1, max_delay_ms=5, backoff_multiplier=2.0)


def make_ctx(run_id: str = "run-1", step: int = 0) -> FlowContext:
    return FlowContext(
        run_id=run_id,
        flow_id="flow",
        flow_version="1",
        meta=RunMeta(step=step),
    )


async def _types(store, run_id="run-1"):
    return [e.type for e in await store.events.get_timeline(run_id)]


# ==============================================================================
# Basic outcomes
# ==============================================================================


@pytest.mark.asyncio
async def test_ok_is_recorded_and_logged(in_memory_store):
    async def handler(ctx):
        return ok(output=42, patch={"x": 1})

    node = NodeDefinition("n", handler)
    ctx = make_ctx()

    execution = await execute_node(node, ctx, in_memory_store.events, in_memory_store.idempotency)

    assert execution.cached is False
    assert execution.result == Ok(output=42, patch={"x": 1})
    assert ctx.meta.attempts == {"n": 1}
    assert await _types(in_memory_store) == [EventType.NODE_STARTED, EventType.NODE_FINISHED]

    record = await in_memory_store.idempotency.get(default_idempotency_key("run-1", "n", 0))
    assert record is not None
    assert record.output == 42
    assert record.patch == {"x": 1}


@pytest.mark.asyncio
async def test_second_execution_replays_without_invoking_handler(in_memory_store):
    calls = []

    async def handler(ctx):
        calls.append(1)
        return ok(output="side effect")

    node = NodeDefinition("n", handler)

    first = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)
    second = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert calls == [1]
    assert first.cached is False
    assert second.cached is True
    assert second.result == Ok(output="side effect", patch=None)
    finished = [
        e for e in await in_memory_store.events.get_timeline("run-1") if e.type == EventType.NODE_FINISHED
    ]
    assert [e.payload["cached"] for e in finished] == [False, True]


@pytest.mark.asyncio
async def test_different_step_is_not_replayed(in_memory_store):
    calls = []

    async def handler(ctx):
        calls.append(ctx.meta.step)
        return ok()

    node = NodeDefinition("n", handler)
    await execute_node(node, make_ctx(step=0), in_memory_store.events, in_memory_store.idempotency)
    await execute_node(node, make_ctx(step=1), in_memory_store.events, in_memory_store.idempotency)

    assert calls == [0, 1]


@pytest.mark.asyncio
async def test_custom_idempotency_key(in_memory_store):
    calls = []

    async def handler(ctx):
        calls.append(ctx.run_id)
        return ok(output="once per order")

    node = NodeDefinition("n", handler, idempotency_key=lambda ctx: "order-7")

    await execute_node(node, make_ctx("run-a"), in_memory_store.events, in_memory_store.idempotency)
    replay = await execute_node(
        node, make_ctx("run-b"), in_memory_store.events, in_memory_store.idempotency
    )

    assert calls == ["run-a"]
    assert replay.cached is True
    assert (await in_memory_store.idempotency.get("order-7")).run_id == "run-a"


@pytest.mark.asyncio
async def test_wait_is_not_recorded(in_memory_store):
    calls = []

    async def handler(ctx):
        calls.append(1)
        return wait(reason="approval")

    node = NodeDefinition("n", handler)
    for _ in range(2):
        execution = await execute_node(
            node, make_ctx(), in_memory_store.events, in_memory_store.idempotency
        )
        assert isinstance(execution.result, Wait)
        assert execution.cached is False

    assert calls == [1, 1]
    assert await in_memory_store.idempotency.get(default_idempotency_key("run-1", "n", 0)) is None


@pytest.mark.asyncio
async def test_invalid_result_is_an_error(in_memory_store):
    async def handler(ctx):
        return {"status": "ok"}

    execution = await execute_node(
        NodeDefinition("n", handler), make_ctx(), in_memory_store.events, in_memory_store.idempotency
    )

    assert isinstance(execution.result, Error)
    assert execution.result.error.code == "INVALID_RESULT"


@pytest.mark.asyncio
async def test_exception_code_attribute_is_kept(in_memory_store):
    async def handler(ctx):
        raise FlowError("quota exceeded", code="RATE_LIMIT")

    execution = await execute_node(
        NodeDefinition("n", handler), make_ctx(), in_memory_store.events, in_memory_store.idempotency
    )

    assert execution.result.error.code == "RATE_LIMIT"
    assert execution.result.error.message == "quota exceeded"
    timeline = await in_memory_store.events.get_timeline("run-1")
    assert timeline[-1].type == EventType.NODE_FAILED
    assert timeline[-1].payload["error"]["code"] == "RATE_LIMIT"


# ==============================================================================
# Retries
# ==============================================================================


@pytest.mark.asyncio
async def test_retryable_error_is_retried_until_success(in_memory_store):
    attempts = []

    async def handler(ctx):
        attempts.append(1)
        if len(attempts) < 3:
            return error("NETWORK_ERROR", "flaky")
        return ok(output="finally")

    node = NodeDefinition("n", handler, retry=FAST_RETRY)
    execution = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert execution.result == Ok(output="finally")
    assert len(attempts) == 3
    timeline = await in_memory_store.events.get_timeline("run-1")
    assert [e.type for e in timeline] == [
        EventType.NODE_STARTED,
        EventType.NODE_FAILED,
        EventType.NODE_FAILED,
        EventType.NODE_FINISHED,
    ]
    assert [e.attempt for e in timeline[1:]] == [1, 2, 3]


@pytest.mark.asyncio
async def test_non_retryable_error_stops_immediately(in_memory_store):
    attempts = []

    async def handler(ctx):
        attempts.append(1)
        return error("VALIDATION", "no")

    node = NodeDefinition("n", handler, retry=FAST_RETRY)
    execution = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert execution.result.error.code == "VALIDATION"
    assert attempts == [1]


@pytest.mark.asyncio
async def test_explicit_retryable_flag_overrides_code(in_memory_store):
    attempts = []

    async def handler(ctx):
        attempts.append(1)
        return error("VALIDATION", "try again", retryable=True)

    node = NodeDefinition("n", handler, retry=FAST_RETRY)
    execution = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert isinstance(execution.result, Error)
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retryable_error_without_policy_runs_once(in_memory_store):
    attempts = []

    async def handler(ctx):
        attempts.append(1)
        return error("NETWORK_ERROR", "flaky")

    execution = await execute_node(
        NodeDefinition("n", handler), make_ctx(), in_memory_store.events, in_memory_store.idempotency
    )

    assert isinstance(execution.result, Error)
    assert attempts == [1]


@pytest.mark.asyncio
async def test_raised_exception_is_not_retried(in_memory_store):
    attempts = []

    async def handler(ctx):
        attempts.append(1)
        raise ValueError("bug")

    node = NodeDefinition("n", handler, retry=FAST_RETRY)
    execution = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert execution.result.error.code == "UNKNOWN"
    assert attempts == [1]


# ==============================================================================
# Timeouts
# ==============================================================================


@pytest.mark.asyncio
async def test_timeout_is_classified(in_memory_store):
    async def slow(ctx):
        await asyncio.sleep(0.2)
        return ok()

    node = NodeDefinition("slow", slow, timeout_ms=10)
    execution = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert isinstance(execution.result, Error)
    assert execution.result.error.code == "TIMEOUT"
    assert "10ms" in execution.result.error.message


@pytest.mark.asyncio
async def test_timeout_is_retried_with_policy(in_memory_store):
    attempts = []

    async def sometimes_slow(ctx):
        attempts.append(1)
        if len(attempts) == 1:
            await asyncio.sleep(0.2)
        return ok(output="fast enough")

    node = NodeDefinition("n", sometimes_slow, timeout_ms=20, retry=FAST_RETRY)
    execution = await execute_node(node, make_ctx(), in_memory_store.events, in_memory_store.idempotency)

    assert execution.result == Ok(output="fast enough")
    assert len(attempts) == 2
