"""Next-node selection.

select_next_node() is a pure function of the current node, the edge list
and the context's state and outputs: identical inputs always yield the same
answer, and it never touches storage.
"""

from __future__ import annotations

from collections.abc import Iterable

from tickflow.errors import TransitionError
from tickflow.models import EdgeDefinition, FlowContext


def ordered_edges(current_node_id: str, edges: Iterable[EdgeDefinition]) -> list[EdgeDefinition]:
    """Outgoing edges of ``current_node_id`` in evaluation order.

    Higher priority first; ``sorted`` is stable, so equal priorities keep
    their declaration order.
    """
    outgoing = [e for e in edges if e.from_node == current_node_id]
    return sorted(outgoing, key=lambda e: -e.priority)


def select_next_node(
    current_node_id: str, edges: Iterable[EdgeDefinition], ctx: FlowContext
) -> str | None:
    """
    Pick the node the run moves to after ``current_node_id`` finished.

    Returns the target of the first edge whose condition is absent or truthy,
    or None when no edge matches (the run is complete).

    Raises:
        TransitionError: If an edge condition raises. The error carries code
            ``EDGE_CONDITION_FAILED`` unless the condition itself raised a
            TransitionError with its own code.
    """
    for edge in ordered_edges(current_node_id, edges):
        if edge.when is None:
            return edge.to_node
        try:
            matched = edge.when(ctx)
        except TransitionError:
            raise
        except Exception as e:
            raise TransitionError(
                f"Condition on edge {edge.from_node} -> {edge.to_node} failed: {e}",
                code="EDGE_CONDITION_FAILED",
                from_node=current_node_id,
            ) from e
        if matched:
            return edge.to_node
    return None
