"""Execution context handed to node handlers and edge conditions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any


@dataclass
class RunMeta:
    """Bookkeeping for the current tick.

    Attributes:
        attempts: Handler attempts made during this tick, keyed by node id
        started_at: ISO timestamp of the run's creation
        step: The run's cursor-advance counter (see FlowRun.step)
    """

    attempts: dict[str, int] = field(default_factory=dict)
    started_at: str = ""
    step: int = 0


@dataclass
class FlowContext:
    """
    Everything a node handler may read.

    ``state`` and ``outputs`` are schema-less JSON documents. Handlers must
    not mutate them in place: state changes are described by the ``patch`` of
    the returned result and applied by the engine.

    ``services`` is passed through unmodified from the engine's constructor;
    the engine never interprets its contents.
    """

    run_id: str
    flow_id: str
    flow_version: str
    input: Any = None
    state: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    tenant_id: str | None = None
    meta: RunMeta = field(default_factory=RunMeta)
    services: Mapping[str, Any] = field(default_factory=dict)

    def with_data(self, state: dict[str, Any], outputs: dict[str, Any]) -> FlowContext:
        """Copy of this context seeing updated state and outputs."""
        return replace(self, state=state, outputs=outputs)
