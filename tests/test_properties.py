"""
Property-based tests for tickflow using Hypothesis.

Generated flow graphs check that:
- driving a run always terminates in exactly one terminal status
- timelines start with a single RUN_STARTED and never go back in time
- retry delays stay within policy bounds
"""

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from tickflow.config import EngineSettings
from tickflow.engine import FlowEngine, FlowRunner
from tickflow.models import (
    EdgeDefinition,
    EventType,
    FlowDefinition,
    FlowRunStatus,
    NodeDefinition,
    RetryPolicy,
    error,
    ok,
)
from tickflow.storage import InMemoryFlowStore

# ==============================================================================
# PROPERTY 1: Termination and event ordering on acyclic graphs
# ==============================================================================


@st.composite
def acyclic_flows(draw):
    """Random DAG over n0..nk; edges only go to higher-numbered nodes."""
    size = draw(st.integers(min_value=1, max_value=6))
    ids = [f"n{i}" for i in range(size)]
    failing = draw(st.sets(st.sampled_from(ids), max_size=2))

    edges = []
    for i, source in enumerate(ids[:-1]):
        targets = draw(st.lists(st.sampled_from(ids[i + 1 :]), max_size=3))
        for target in targets:
            threshold = draw(st.one_of(st.none(), st.integers(min_value=0, max_value=5)))
            when = None if threshold is None else (lambda ctx, t=threshold: ctx.input > t)
            priority = draw(st.integers(min_value=0, max_value=2))
            edges.append(EdgeDefinition(source, target, when=when, priority=priority))

    def make_handler(node_id):
        async def handler(ctx):
            if node_id in failing:
                return error("BOOM", f"{node_id} failed")
            return ok(output=node_id, patch={"visited": ctx.state.get("visited", []) + [node_id]})

        return handler

    nodes = {node_id: NodeDefinition(node_id, make_handler(node_id)) for node_id in ids}
    return FlowDefinition("dag", "1", ids[0], nodes, tuple(edges))


@pytest.mark.property
@pytest.mark.asyncio
@given(definition=acyclic_flows(), value=st.integers(min_value=0, max_value=6))
@settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
async def test_acyclic_runs_terminate_with_ordered_timeline(definition, value):
    """
    Property: for an acyclic graph, ticking until terminal reaches exactly one
    of COMPLETED/FAILED within len(nodes) ticks, and the timeline is ordered.
    """
    engine = FlowEngine(InMemoryFlowStore(), settings=EngineSettings())
    await engine.register_definition(definition)
    started = await engine.start_run("dag", "1", input=value)

    run = await FlowRunner(engine).drive(started.run_id, max_ticks=len(definition.nodes))

    assert run.status in (FlowRunStatus.COMPLETED, FlowRunStatus.FAILED)
    assert run.current_node_id is None

    timeline = await engine.get_timeline(started.run_id)
    assert timeline[0].type == EventType.RUN_STARTED
    assert [e.type for e in timeline].count(EventType.RUN_STARTED) == 1
    assert [e.seq for e in timeline] == list(range(1, len(timeline) + 1))
    assert all(a.at <= b.at for a, b in zip(timeline, timeline[1:]))

    terminal = [e.type for e in timeline if e.type in (EventType.RUN_COMPLETED, EventType.RUN_ABORTED)]
    assert len(terminal) == 1


# ==============================================================================
# PROPERTY 2: Retry delays
# ==============================================================================


@pytest.mark.property
@given(
    max_attempts=st.integers(min_value=1, max_value=20),
    initial_delay_ms=st.integers(min_value=0, max_value=10_000),
    max_delay_ms=st.integers(min_value=0, max_value=60_000),
    multiplier=st.floats(min_value=1.0, max_value=4.0),
    attempt=st.integers(min_value=1, max_value=25),
)
def test_retry_delay_bounds(max_attempts, initial_delay_ms, max_delay_ms, multiplier, attempt):
    """Property: delays are capped, and there is no delay after the last attempt."""
    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay_ms=initial_delay_ms,
        max_delay_ms=max_delay_ms,
        backoff_multiplier=multiplier,
    )

    delay = policy.delay_for_attempt(attempt)

    if attempt >= max_attempts:
        assert delay is None
    else:
        assert 0 <= delay <= max_delay_ms
