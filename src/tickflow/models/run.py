"""Persisted run state: run rows, timeline events and idempotency records."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from tickflow.models.status import EventType, FlowRunStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


# Columns FlowRunRepo.update() may touch. Identity and created_at never change.
UPDATABLE_RUN_FIELDS = frozenset(
    {"status", "current_node_id", "state", "outputs", "step", "updated_at"}
)


@dataclass
class FlowRun:
    """
    A single execution of a flow definition.

    Created by FlowEngine.start_run() and mutated only by the engine while it
    holds the run's advisory lock. Runs are never deleted by the engine; the
    lifecycle ends at COMPLETED or FAILED and the row is retained for audit.

    Design: Value object pattern - repositories hand out snapshots, never
    live references, so mutating a returned FlowRun has no effect on storage.
    """

    run_id: str
    """Globally unique run identifier (uuid7 string, time ordered)."""

    flow_id: str
    flow_version: str

    status: FlowRunStatus = FlowRunStatus.RUNNING

    tenant_id: str | None = None

    current_node_id: str | None = None
    """The single active node; None before start and after termination."""

    input: Any = None
    """Immutable run input as given to start_run()."""

    state: dict[str, Any] = field(default_factory=dict)
    """Accumulated working state, mutated through node patches."""

    outputs: dict[str, Any] = field(default_factory=dict)
    """Per-node outputs keyed by node id (last write wins on revisits)."""

    step: int = 0
    """Number of times the cursor has advanced.

    Part of the idempotency identity: a retried tick at the same step reuses
    the recorded result, while a later visit to the same node (a loop) is a
    new step and executes again.
    """

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def with_updates(self, **fields: Any) -> FlowRun:
        unknown = set(fields) - UPDATABLE_RUN_FIELDS
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())
        return replace(self, **fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "flowId": self.flow_id,
            "flowVersion": self.flow_version,
            "tenantId": self.tenant_id,
            "status": self.status.value,
            "currentNodeId": self.current_node_id,
            "input": self.input,
            "state": self.state,
            "outputs": self.outputs,
            "step": self.step,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"FlowRun(run_id={self.run_id!r}, flow={self.flow_id}@{self.flow_version}, "
            f"status={self.status}, current_node_id={self.current_node_id!r}, step={self.step})"
        )


@dataclass(frozen=True)
class FlowEvent:
    """Append-only timeline entry. Never mutated or deleted."""

    run_id: str
    seq: int
    """Per-run sequence number; gives a total order even when ``at`` ties."""

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    node_id: str | None = None
    attempt: int | None = None
    at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "seq": self.seq,
            "type": self.type.value,
            "nodeId": self.node_id,
            "attempt": self.attempt,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class IdempotencyRecord:
    """Recorded ``ok`` result of a node execution."""

    key: str
    run_id: str
    node_id: str
    output: Any = None
    patch: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StartRunResult:
    run_id: str
    status: FlowRunStatus = FlowRunStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {"runId": self.run_id, "status": self.status.value}
