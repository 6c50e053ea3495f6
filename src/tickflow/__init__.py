"""
tickflow: durable flow execution for Python.

A persistence-backed state machine that advances flow runs through a graph
of async node handlers, one tick at a time. Runs survive process restarts,
replay recorded node results instead of re-running side effects, and keep
an append-only timeline of everything that happened.

Design Pattern: Façade Pattern
This module re-exports the pieces most applications need, so that
``import tickflow`` is enough for everyday use.

Example:
    ```python
    import asyncio
    from tickflow import (
        FlowEngine, SqliteFlowStore, build_flow_definition,
        edge, entry, flow_definition, node, ok,
    )

    @flow_definition("greeting", "1")
    class Greeting:
        @entry
        @node
        @edge("shout")
        async def compose(self, ctx):
            return ok(output=f"hello {ctx.input['name']}")

        @node
        async def shout(self, ctx):
            return ok(output=ctx.outputs["compose"].upper())

    async def main():
        async with SqliteFlowStore("flows.db") as store:
            engine = FlowEngine(store)
            await engine.register_definition(build_flow_definition(Greeting))
            started = await engine.start_run("greeting", "1", input={"name": "ada"})
            await engine.tick(started.run_id)
            run = await engine.tick(started.run_id)
            print(run.status, run.outputs)

    asyncio.run(main())
    ```
"""

from tickflow.config import EngineSettings, create_store
from tickflow.decorators import build_flow_definition, edge, entry, flow_definition, node
from tickflow.engine import (
    FlowEngine,
    FlowRunner,
    advisory_lock,
    apply_patch,
    execute_node,
    select_next_node,
    with_advisory_lock,
    with_timeout,
)
from tickflow.errors import (
    DefinitionError,
    FlowError,
    FlowNotFoundError,
    InvalidTransitionError,
    LockLostError,
    LockTimeoutError,
    NodeNotFoundError,
    NodeTimeoutError,
    RunNotFoundError,
    TransitionError,
)
from tickflow.models import (
    EdgeDefinition,
    Error,
    EventType,
    FlowContext,
    FlowDefinition,
    FlowEvent,
    FlowRun,
    FlowRunStatus,
    NodeDefinition,
    NodeError,
    NodeResult,
    Ok,
    RetryPolicy,
    StartRunResult,
    Wait,
    error,
    ok,
    wait,
)
from tickflow.storage import FlowStore, StorageError
from tickflow.storage.memory import InMemoryFlowStore
from tickflow.storage.sqlite import SqliteFlowStore

__version__ = "0.1.0"

__all__ = [
    # Engine
    "FlowEngine",
    "FlowRunner",
    "execute_node",
    "select_next_node",
    "apply_patch",
    "with_timeout",
    "advisory_lock",
    "with_advisory_lock",
    # Definitions
    "FlowDefinition",
    "NodeDefinition",
    "EdgeDefinition",
    "RetryPolicy",
    "flow_definition",
    "entry",
    "node",
    "edge",
    "build_flow_definition",
    # Runs and results
    "FlowContext",
    "FlowRun",
    "FlowRunStatus",
    "FlowEvent",
    "EventType",
    "StartRunResult",
    "NodeResult",
    "NodeError",
    "Ok",
    "Wait",
    "Error",
    "ok",
    "wait",
    "error",
    # Storage (Adapter pattern)
    "FlowStore",
    "InMemoryFlowStore",
    "SqliteFlowStore",
    "StorageError",
    # Configuration
    "EngineSettings",
    "create_store",
    # Errors
    "FlowError",
    "FlowNotFoundError",
    "RunNotFoundError",
    "NodeNotFoundError",
    "NodeTimeoutError",
    "TransitionError",
    "DefinitionError",
    "LockTimeoutError",
    "LockLostError",
    "InvalidTransitionError",
]
