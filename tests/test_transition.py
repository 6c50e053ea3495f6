"""Tests for next-node selection."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from tickflow.engine.transition import ordered_edges, select_next_node
from tickflow.errors import TransitionError
from tickflow.models import EdgeDefinition, FlowContext


def ctx_with(state=None, outputs=None) -> FlowContext:
    return FlowContext(
        run_id="r", flow_id="f", flow_version="1", state=state or {}, outputs=outputs or {}
    )


def test_unconditional_edge_is_taken():
    edges = [EdgeDefinition("A", "B")]
    assert select_next_node("A", edges, ctx_with()) == "B"


def test_no_outgoing_edge_completes():
    edges = [EdgeDefinition("B", "C")]
    assert select_next_node("A", edges, ctx_with()) is None


def test_no_matching_condition_completes():
    edges = [EdgeDefinition("A", "B", when=lambda ctx: False)]
    assert select_next_node("A", edges, ctx_with()) is None


def test_first_match_in_declaration_order():
    edges = [
        EdgeDefinition("A", "small", when=lambda ctx: ctx.state["n"] < 10),
        EdgeDefinition("A", "medium", when=lambda ctx: ctx.state["n"] < 100),
        EdgeDefinition("A", "fallback"),
    ]
    assert select_next_node("A", edges, ctx_with({"n": 5})) == "small"
    assert select_next_node("A", edges, ctx_with({"n": 50})) == "medium"
    assert select_next_node("A", edges, ctx_with({"n": 500})) == "fallback"


def test_higher_priority_is_evaluated_first():
    edges = [
        EdgeDefinition("A", "default"),
        EdgeDefinition("A", "urgent", when=lambda ctx: ctx.outputs.get("A") == "urgent", priority=10),
    ]
    assert select_next_node("A", edges, ctx_with(outputs={"A": "urgent"})) == "urgent"
    assert select_next_node("A", edges, ctx_with(outputs={"A": "normal"})) == "default"


def test_equal_priorities_keep_declaration_order():
    edges = [
        EdgeDefinition("A", "x", priority=1),
        EdgeDefinition("A", "y", priority=5),
        EdgeDefinition("A", "z", priority=1),
        EdgeDefinition("B", "w", priority=9),
    ]
    assert [e.to_node for e in ordered_edges("A", edges)] == ["y", "x", "z"]


def test_truthy_condition_result_is_accepted():
    edges = [EdgeDefinition("A", "B", when=lambda ctx: ctx.state.get("items"))]
    assert select_next_node("A", edges, ctx_with({"items": [1]})) == "B"
    assert select_next_node("A", edges, ctx_with({"items": []})) is None


def test_raising_condition_is_classified():
    def broken(ctx):
        return ctx.state["missing"]

    edges = [EdgeDefinition("A", "B", when=broken)]
    with pytest.raises(TransitionError) as exc_info:
        select_next_node("A", edges, ctx_with())

    assert exc_info.value.code == "EDGE_CONDITION_FAILED"
    assert exc_info.value.from_node == "A"
    assert isinstance(exc_info.value.__cause__, KeyError)


def test_transition_error_from_condition_keeps_its_code():
    def guard(ctx):
        raise TransitionError("quota", code="QUOTA_EXCEEDED")

    with pytest.raises(TransitionError) as exc_info:
        select_next_node("A", [EdgeDefinition("A", "B", when=guard)], ctx_with())
    assert exc_info.value.code == "QUOTA_EXCEEDED"


# ==============================================================================
# PROPERTY: Transition determinism
# ==============================================================================

_targets = st.sampled_from(["A", "B", "C", "D"])
_thresholds = st.one_of(st.none(), st.integers(min_value=-5, max_value=5))


def _edge(source, target, threshold, priority):
    if threshold is None:
        return EdgeDefinition(source, target, priority=priority)
    return EdgeDefinition(
        source, target, when=lambda ctx, t=threshold: ctx.state["n"] > t, priority=priority
    )


@pytest.mark.property
@given(
    specs=st.lists(
        st.tuples(_targets, _targets, _thresholds, st.integers(min_value=-3, max_value=3)),
        max_size=12,
    ),
    current=_targets,
    n=st.integers(min_value=-10, max_value=10),
)
@settings(max_examples=200)
def test_selection_is_deterministic(specs, current, n):
    """
    Property: identical (node, edges, state, outputs) always select the same node,
    and the selection is the first matching edge in priority order.
    """
    edges = [_edge(*spec) for spec in specs]
    state = {"n": n}

    first = select_next_node(current, edges, ctx_with(dict(state)))
    second = select_next_node(current, list(edges), ctx_with(dict(state)))
    assert first == second

    expected = None
    for edge in ordered_edges(current, edges):
        if edge.when is None or edge.when(ctx_with(dict(state))):
            expected = edge.to_node
            break
    assert first == expected
