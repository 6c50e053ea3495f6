"""
Decorators for declaring flows as classes.

A flow class groups its node handlers as async methods. Decorators only
attach metadata; build_flow_definition() reads it back and produces a
plain FlowDefinition:

    @flow_definition("approval", "1")
    class ApprovalFlow:
        @entry
        @node(timeout_ms=5_000)
        @edge("notify", when=lambda ctx: ctx.state.get("approved"))
        @edge("reject")
        async def review(self, ctx):
            ...

        @node
        async def notify(self, ctx):
            ...

        @node
        async def reject(self, ctx):
            ...

    definition = build_flow_definition(ApprovalFlow)

Stacked @edge decorators keep their top-to-bottom source order, which is
the declaration order used to break priority ties. Edges of different
nodes follow the order in which the methods are defined.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from tickflow.errors import DefinitionError
from tickflow.models import (
    EdgeDefinition,
    FlowContext,
    FlowDefinition,
    NodeDefinition,
    RetryPolicy,
)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

_FLOW_ATTR = "_tickflow_flow"
_NODE_ATTR = "_tickflow_node"
_EDGES_ATTR = "_tickflow_edges"
_ENTRY_ATTR = "_tickflow_entry"


def flow_definition(flow_id: str, version: str) -> Callable[[type[T]], type[T]]:
    """Mark a class as the definition of ``flow_id@version``."""

    def decorator(cls: type[T]) -> type[T]:
        setattr(cls, _FLOW_ATTR, (flow_id, version))
        return cls

    return decorator


def entry(func: F) -> F:
    """Mark a node method as the flow's entry point (implies @node)."""
    setattr(func, _ENTRY_ATTR, True)
    if not hasattr(func, _NODE_ATTR):
        setattr(func, _NODE_ATTR, {})
    return func


def node(
    func: F | str | None = None,
    *,
    id: str | None = None,
    name: str | None = None,
    retry: RetryPolicy | None = None,
    timeout_ms: int | None = None,
    idempotency_key: Callable[[FlowContext], str] | None = None,
) -> F:
    """
    Mark an async method as a flow node.

    The node id defaults to the method name. Supports ``@node``,
    ``@node("custom-id")`` and ``@node(id=..., retry=..., ...)``.

    Args:
        id: Node id (defaults to the method name)
        name: Display name
        retry: In-tick retry policy
        timeout_ms: Per-attempt deadline
        idempotency_key: Custom key function, replacing the run/node/step key
    """
    if isinstance(func, str):
        id, func = func, None

    options = {
        "id": id,
        "name": name,
        "retry": retry,
        "timeout_ms": timeout_ms,
        "idempotency_key": idempotency_key,
    }

    def decorator(f: F) -> F:
        setattr(f, _NODE_ATTR, options)
        return f

    if func is not None:
        return decorator(func)
    return decorator  # type: ignore[return-value]


def edge(
    to: str,
    when: Callable[[FlowContext], bool] | str | None = None,
    priority: int = 0,
) -> Callable[[F], F]:
    """
    Add an outgoing edge from the decorated node to ``to``.

    ``when`` may be a callable taking the FlowContext or the name of a
    method on the flow class. Stack several @edge decorators for branching.
    """

    def decorator(f: F) -> F:
        edges = list(getattr(f, _EDGES_ATTR, ()))
        # Decorators apply bottom-up; prepend to keep source order.
        edges.insert(0, (to, when, priority))
        setattr(f, _EDGES_ATTR, edges)
        return f

    return decorator


def _node_methods(cls: type) -> list[tuple[str, Any]]:
    seen: dict[str, Any] = {}
    # Base classes first so subclasses can override nodes.
    for klass in reversed(cls.__mro__):
        for attr_name, value in vars(klass).items():
            if callable(value) and hasattr(value, _NODE_ATTR):
                seen[attr_name] = value
            elif attr_name in seen:
                del seen[attr_name]
    return list(seen.items())


def build_flow_definition(cls: type, *args: Any, **kwargs: Any) -> FlowDefinition:
    """
    Instantiate a decorated flow class and build its FlowDefinition.

    Extra arguments are passed to the class constructor. Handlers and
    string conditions are bound to that single instance.

    Raises:
        DefinitionError: If the class is not decorated with @flow_definition,
            has no @entry node or more than one, or declares a node id twice
    """
    meta = getattr(cls, _FLOW_ATTR, None)
    if meta is None:
        raise DefinitionError(
            f"Class {cls.__name__} is not decorated with @flow_definition(flow_id, version)"
        )
    flow_id, version = meta
    instance = cls(*args, **kwargs)

    nodes: dict[str, NodeDefinition] = {}
    edges: list[EdgeDefinition] = []
    entries: list[str] = []

    for attr_name, func in _node_methods(cls):
        options = getattr(func, _NODE_ATTR)
        node_id = options.get("id") or attr_name
        if node_id in nodes:
            raise DefinitionError(f"Flow {flow_id}@{version}: duplicate node id {node_id!r}")

        nodes[node_id] = NodeDefinition(
            id=node_id,
            handler=getattr(instance, attr_name),
            name=options.get("name"),
            timeout_ms=options.get("timeout_ms"),
            retry=options.get("retry"),
            idempotency_key=options.get("idempotency_key"),
        )
        if getattr(func, _ENTRY_ATTR, False):
            entries.append(node_id)

        for to, when, priority in getattr(func, _EDGES_ATTR, ()):
            if isinstance(when, str):
                condition = getattr(instance, when, None)
                if not callable(condition):
                    raise DefinitionError(
                        f"Flow {flow_id}@{version}: edge condition {when!r} is not a method"
                    )
                when = condition
            edges.append(EdgeDefinition(from_node=node_id, to_node=to, when=when, priority=priority))

    if len(entries) != 1:
        raise DefinitionError(
            f"Flow {flow_id}@{version} must have exactly one @entry node, found {len(entries)}"
        )

    return FlowDefinition(
        flow_id=flow_id,
        version=version,
        entry=entries[0],
        nodes=nodes,
        edges=tuple(edges),
    )
