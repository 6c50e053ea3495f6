"""Status enumerations for flow run tracking.

Defines the lifecycle states of a flow run and the event types
recorded on its timeline.
"""

from enum import Enum


class FlowRunStatus(Enum):
    """Status of a flow run.

    Lifecycle:
        RUNNING → RUNNING (cursor advanced) / WAITING / COMPLETED / FAILED
        WAITING → RUNNING (resume or advance) / WAITING / COMPLETED / FAILED

    COMPLETED and FAILED are terminal: no further tick alters the run.
    """

    RUNNING = "RUNNING"
    """Run is eligible for the next tick."""

    WAITING = "WAITING"
    """Run is paused on a node, waiting for resume_run()."""

    COMPLETED = "COMPLETED"
    """Run reached a node with no matching outgoing edge."""

    FAILED = "FAILED"
    """Run was aborted by a node error or a missing resource."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work possible)."""
        return self in (FlowRunStatus.COMPLETED, FlowRunStatus.FAILED)

    @property
    def is_active(self) -> bool:
        """Check if a tick may act on a run in this status."""
        return self in (FlowRunStatus.RUNNING, FlowRunStatus.WAITING)

    def can_transition_to(self, other: "FlowRunStatus") -> bool:
        """Check whether moving from this status to ``other`` is legal."""
        return other in _TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[FlowRunStatus, frozenset[FlowRunStatus]] = {
    FlowRunStatus.RUNNING: frozenset(
        {
            FlowRunStatus.RUNNING,
            FlowRunStatus.WAITING,
            FlowRunStatus.COMPLETED,
            FlowRunStatus.FAILED,
        }
    ),
    # tick() re-enters a waiting run's node, so it moves like a running run.
    FlowRunStatus.WAITING: frozenset(
        {
            FlowRunStatus.RUNNING,
            FlowRunStatus.WAITING,
            FlowRunStatus.COMPLETED,
            FlowRunStatus.FAILED,
        }
    ),
    FlowRunStatus.COMPLETED: frozenset(),
    FlowRunStatus.FAILED: frozenset(),
}


class EventType(Enum):
    """Type of an entry on a run's timeline."""

    RUN_STARTED = "RUN_STARTED"
    RUN_WAITING = "RUN_WAITING"
    RUN_RESUMED = "RUN_RESUMED"
    RUN_COMPLETED = "RUN_COMPLETED"
    RUN_ABORTED = "RUN_ABORTED"
    NODE_STARTED = "NODE_STARTED"
    NODE_FINISHED = "NODE_FINISHED"
    NODE_FAILED = "NODE_FAILED"

    def __str__(self) -> str:
        return self.value
