"""Error taxonomy for the flow engine.

Every error carries a stable ``code`` so that callers (and the engine
itself, when recording ``RUN_ABORTED`` events) can classify failures
without parsing messages.

Propagation:
    - FlowNotFoundError / RunNotFoundError are raised to the caller of
      start_run(), tick() and resume_run(): they indicate a usage error.
    - Node and transition errors are captured into the run's FAILED state
      and its timeline; they never escape tick().
"""

from __future__ import annotations


class FlowError(Exception):
    """Base class for all engine errors.

    Subclasses set a class-level ``code``; instances may override it.
    """

    code: str = "UNKNOWN"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, str]:
        """Serializable ``{code, message}`` form used in event payloads."""
        return {"code": self.code, "message": self.message}


class FlowNotFoundError(FlowError):
    """No definition is registered under ``flow_id@version``."""

    code = "FLOW_NOT_FOUND"

    def __init__(self, flow_id: str, version: str):
        super().__init__(f"Flow {flow_id}@{version} not found")
        self.flow_id = flow_id
        self.version = version


class RunNotFoundError(FlowError):
    """No run exists with the given id."""

    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class NodeNotFoundError(FlowError):
    """The run's cursor points at a node absent from its definition."""

    code = "NODE_NOT_FOUND"

    def __init__(self, node_id: str):
        super().__init__(f"Node {node_id} not found")
        self.node_id = node_id


class NodeTimeoutError(FlowError):
    """A node handler exceeded its deadline.

    The handler is detached, not cancelled: see tickflow.engine.timeout.
    """

    code = "TIMEOUT"

    def __init__(self, node_id: str, timeout_ms: int):
        super().__init__(f"Node {node_id} timed out after {timeout_ms}ms")
        self.node_id = node_id
        self.timeout_ms = timeout_ms


class TransitionError(FlowError):
    """Selecting the next node failed."""

    code = "TRANSITION_ERROR"

    def __init__(self, message: str, code: str | None = None, from_node: str | None = None):
        super().__init__(message, code)
        self.from_node = from_node


class DefinitionError(FlowError):
    """A flow definition is malformed."""

    code = "INVALID_DEFINITION"


class LockTimeoutError(FlowError):
    """The run's advisory lock could not be acquired in time."""

    code = "LOCK_TIMEOUT"

    def __init__(self, name: str, timeout_ms: int):
        super().__init__(f"Could not acquire lock {name} within {timeout_ms}ms")
        self.name = name
        self.timeout_ms = timeout_ms


class LockLostError(FlowError):
    """The run's lease expired while its holder was still working."""

    code = "LOCK_LOST"

    def __init__(self, name: str):
        super().__init__(f"Lock {name} was lost before the run could be saved")
        self.name = name


class InvalidTransitionError(FlowError):
    """A run status change outside FlowRunStatus's legal transitions."""

    code = "INVALID_TRANSITION"

    def __init__(self, run_id: str, current: object, target: object):
        super().__init__(f"Run {run_id} cannot move from {current} to {target}")
        self.run_id = run_id
        self.current = current
        self.target = target
