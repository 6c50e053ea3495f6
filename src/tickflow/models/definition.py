"""Flow definitions: the immutable, versioned graph a run walks.

A FlowDefinition is identified by ``(flow_id, version)`` and is never
mutated after construction. Handlers and edge conditions are plain Python
callables; ``to_json()`` describes them by name only so a definition can be
persisted for listing and recovery.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tickflow.errors import DefinitionError
from tickflow.models.retry import RetryPolicy

if TYPE_CHECKING:
    from tickflow.models.context import FlowContext
    from tickflow.models.result import NodeResult

NodeHandler = Callable[["FlowContext"], Awaitable["NodeResult"]]
EdgeCondition = Callable[["FlowContext"], bool]
IdempotencyKeyFn = Callable[["FlowContext"], str]


def _callable_name(fn: Callable[..., Any] | None) -> str | None:
    if fn is None:
        return None
    return getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or repr(fn)


@dataclass(frozen=True)
class NodeDefinition:
    """A single node: an opaque async handler plus its execution config."""

    id: str
    """Node identifier, unique within the definition."""

    handler: NodeHandler
    """Async callable receiving the FlowContext and returning a NodeResult."""

    name: str | None = None
    """Optional display name."""

    timeout_ms: int | None = None
    """Deadline for one handler invocation; None disables the guard."""

    retry: RetryPolicy | None = None
    """In-tick retry policy; None means a single attempt."""

    idempotency_key: IdempotencyKeyFn | None = None
    """Custom idempotency key; None uses the run/node/step identity."""

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "handler": _callable_name(self.handler),
            "timeoutMs": self.timeout_ms,
            "retry": self.retry.to_dict() if self.retry else None,
            "customIdempotencyKey": self.idempotency_key is not None,
        }


@dataclass(frozen=True)
class EdgeDefinition:
    """Directed edge between two nodes.

    Edges leaving the same node are evaluated by descending ``priority``;
    equal priorities keep declaration order, and the first edge whose
    condition holds (or has none) wins.
    """

    from_node: str
    to_node: str
    when: EdgeCondition | None = None
    priority: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "from": self.from_node,
            "to": self.to_node,
            "priority": self.priority,
            "when": _callable_name(self.when),
        }


@dataclass(frozen=True)
class FlowDefinition:
    """Immutable, versioned flow graph.

    Raises:
        DefinitionError: If the entry node is not one of ``nodes``
    """

    flow_id: str
    version: str
    entry: str
    nodes: Mapping[str, NodeDefinition]
    edges: tuple[EdgeDefinition, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.flow_id or not self.version:
            raise DefinitionError("flow_id and version are required")
        if self.entry not in self.nodes:
            raise DefinitionError(
                f"Flow {self.flow_id}@{self.version}: entry node {self.entry!r} is not defined"
            )
        for node_id, node in self.nodes.items():
            if node.id != node_id:
                raise DefinitionError(
                    f"Flow {self.flow_id}@{self.version}: node registered as {node_id!r} "
                    f"has id {node.id!r}"
                )
        # Own copies: the caller may keep mutating the originals.
        object.__setattr__(self, "nodes", dict(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))

    @property
    def key(self) -> str:
        """Registry key ``flow_id@version``."""
        return definition_key(self.flow_id, self.version)

    def to_json(self) -> dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "version": self.version,
            "entry": self.entry,
            "nodes": {node_id: node.to_json() for node_id, node in self.nodes.items()},
            "edges": [e.to_json() for e in self.edges],
        }


def definition_key(flow_id: str, version: str) -> str:
    return f"{flow_id}@{version}"


@dataclass(frozen=True)
class StoredDefinition:
    """Persisted projection of a definition, as returned by list_flows()."""

    flow_id: str
    version: str
    definition_json: dict[str, Any]
