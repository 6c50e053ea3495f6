"""Flow execution: the engine and the components it orchestrates.

Leaf-first:
    - timeout: deadline guard with detach semantics
    - idempotency / executor: run one node, replaying recorded results
    - patch: state patch application
    - transition: deterministic next-node selection
    - locks: per-run advisory lock
    - engine: FlowEngine façade
    - runner: optional polling driver
"""

from tickflow.engine.engine import RESUME_PAYLOAD_KEY, FlowEngine
from tickflow.engine.executor import Execution, execute_node
from tickflow.engine.idempotency import default_idempotency_key
from tickflow.engine.locks import LockLease, advisory_lock, run_lock_name, with_advisory_lock
from tickflow.engine.patch import apply_patch, deep_merge, shallow_merge
from tickflow.engine.runner import FlowRunner
from tickflow.engine.timeout import with_timeout
from tickflow.engine.transition import select_next_node

__all__ = [
    "FlowEngine",
    "FlowRunner",
    "RESUME_PAYLOAD_KEY",
    "Execution",
    "execute_node",
    "default_idempotency_key",
    "LockLease",
    "advisory_lock",
    "with_advisory_lock",
    "run_lock_name",
    "apply_patch",
    "deep_merge",
    "shallow_merge",
    "with_timeout",
    "select_next_node",
]
