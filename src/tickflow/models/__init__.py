"""Core data models for flow execution.

Defines flow definitions, run rows, timeline events, node results and
retry configuration.

Design: Dependency-Free Models
These types depend only on tickflow.errors, never on the engine or storage
modules, to prevent circular imports and keep layering clean.
"""

from tickflow.models.context import FlowContext, RunMeta
from tickflow.models.definition import (
    EdgeDefinition,
    FlowDefinition,
    NodeDefinition,
    StoredDefinition,
    definition_key,
)
from tickflow.models.result import (
    RETRYABLE_ERROR_CODES,
    Error,
    NodeError,
    NodeResult,
    Ok,
    Wait,
    error,
    ok,
    wait,
)
from tickflow.models.retry import RetryPolicy
from tickflow.models.run import (
    FlowEvent,
    FlowRun,
    IdempotencyRecord,
    StartRunResult,
    utcnow,
)
from tickflow.models.status import EventType, FlowRunStatus

__all__ = [
    "FlowContext",
    "RunMeta",
    "EdgeDefinition",
    "FlowDefinition",
    "NodeDefinition",
    "StoredDefinition",
    "definition_key",
    "RETRYABLE_ERROR_CODES",
    "Error",
    "NodeError",
    "NodeResult",
    "Ok",
    "Wait",
    "error",
    "ok",
    "wait",
    "RetryPolicy",
    "FlowEvent",
    "FlowRun",
    "IdempotencyRecord",
    "StartRunResult",
    "utcnow",
    "EventType",
    "FlowRunStatus",
]
