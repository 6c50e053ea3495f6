"""
FlowEngine: registers definitions, starts runs and advances them.

The engine is not a scheduler. It exposes async operations (tick,
resume_run) that an external driver calls: a timer, a queue consumer, an
API handler or tickflow.engine.runner.FlowRunner. Every mutation of a run
happens while holding that run's advisory lock, so concurrent callers of
the same run serialize while different runs progress in parallel.

Design Pattern: Façade Pattern
FlowEngine hides the executor, transition selector, lock and repositories
behind a small API:

    engine = FlowEngine(store, services={"mailer": mailer})
    await engine.register_definition(definition)
    started = await engine.start_run("onboarding", "1", input={"user": 42})
    run = await engine.tick(started.run_id)

Failure semantics:
    FlowNotFoundError and RunNotFoundError are raised to the caller.
    Everything else that goes wrong inside a run (node errors, a missing
    node, transition errors) moves the run to FAILED and is recorded as a
    RUN_ABORTED event; it never escapes tick().
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

from tickflow.config import EngineSettings
from tickflow.engine.executor import execute_node
from tickflow.engine.locks import LockLease, advisory_lock
from tickflow.engine.patch import apply_patch, shallow_merge
from tickflow.engine.transition import select_next_node
from tickflow.errors import (
    FlowNotFoundError,
    InvalidTransitionError,
    NodeNotFoundError,
    RunNotFoundError,
)
from tickflow.models import (
    Error,
    EventType,
    FlowContext,
    FlowDefinition,
    FlowEvent,
    FlowRun,
    FlowRunStatus,
    NodeDefinition,
    Ok,
    RunMeta,
    StartRunResult,
    StoredDefinition,
    Wait,
    definition_key,
)
from tickflow.storage.base import FlowStore

logger = logging.getLogger(__name__)

RESUME_PAYLOAD_KEY = "_resume_payload"
"""State key under which resume_run() stores its payload."""


class FlowEngine:
    """
    Durable, single-cursor flow executor.

    The definition registry belongs to the engine instance; construct one
    engine per process and share it with every caller.

    Args:
        store: Connected FlowStore holding runs, events and idempotency records
        services: Passed unmodified into every node's FlowContext
        settings: Lock and timeout configuration (defaults from the environment)
    """

    def __init__(
        self,
        store: FlowStore,
        services: Mapping[str, Any] | None = None,
        settings: EngineSettings | None = None,
    ):
        self._store = store
        self._services: Mapping[str, Any] = services if services is not None else {}
        self._settings = settings or EngineSettings()
        self._registry: dict[str, FlowDefinition] = {}

    def __repr__(self) -> str:
        return f"FlowEngine(store={self._store!r}, definitions={len(self._registry)})"

    @property
    def store(self) -> FlowStore:
        return self._store

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def register_definition(self, definition: FlowDefinition) -> None:
        """Add ``definition`` to the registry and persist it (last write wins)."""
        self._registry[definition.key] = definition
        await self._store.definitions.save(definition)
        logger.info(f"Registered flow {definition.key}")

    def get_definition(self, flow_id: str, version: str) -> FlowDefinition | None:
        return self._registry.get(definition_key(flow_id, version))

    def _require_definition(self, flow_id: str, version: str) -> FlowDefinition:
        definition = self.get_definition(flow_id, version)
        if definition is None:
            raise FlowNotFoundError(flow_id, version)
        return definition

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def start_run(
        self,
        flow_id: str,
        version: str,
        input: Any = None,
        tenant_id: str | None = None,
        initial_state: Mapping[str, Any] | None = None,
    ) -> StartRunResult:
        """
        Create a run positioned on the definition's entry node.

        No node is executed; progress happens only through tick().

        Raises:
            FlowNotFoundError: If ``flow_id@version`` is not registered
        """
        definition = self._require_definition(flow_id, version)

        run_id = str(uuid7())
        await self._store.runs.create(
            FlowRun(
                run_id=run_id,
                flow_id=flow_id,
                flow_version=version,
                tenant_id=tenant_id,
                input=input,
                state=dict(initial_state or {}),
            )
        )
        await self._store.events.append(
            run_id, EventType.RUN_STARTED, {"flowId": flow_id, "version": version}
        )
        await self._store.runs.update(run_id, current_node_id=definition.entry)

        logger.info(f"Started run {run_id} of {definition.key} at node {definition.entry}")
        return StartRunResult(run_id=run_id, status=FlowRunStatus.RUNNING)

    async def tick(self, run_id: str) -> FlowRun:
        """
        Advance a run by one node.

        A RUNNING run executes its current node and moves on. A WAITING run
        re-enters the node it is parked on, so a node polling an external
        condition can finish without resume_run(). Runs in any other status
        are returned unchanged.

        Raises:
            RunNotFoundError: If the run does not exist
            FlowNotFoundError: If the run's definition is no longer registered
            LockTimeoutError: If another worker holds the run's lock too long
            LockLostError: If the run's lease expired before its changes were saved
        """
        async with self._lock(run_id) as lease:
            return await self._tick_core(run_id, lease)

    async def resume_run(self, run_id: str, payload: Any = None) -> FlowRun:
        """
        Unblock a WAITING run and advance it by one node.

        A mapping or list ``payload`` is stored in the run's state under
        ``_resume_payload`` before the parked node is re-entered. Runs that
        are not WAITING are returned unchanged.

        Raises:
            RunNotFoundError: If the run does not exist
            FlowNotFoundError: If the run's definition is no longer registered
        """
        async with self._lock(run_id) as lease:
            run = await self._load(run_id)
            if run.status != FlowRunStatus.WAITING:
                logger.debug(f"Run {run_id} is {run.status}, nothing to resume")
                return run

            definition = self._require_definition(run.flow_id, run.flow_version)
            node_id = run.current_node_id or definition.entry
            if node_id not in definition.nodes:
                return await self._abort(run, lease, NodeNotFoundError(node_id).to_dict(), node_id)

            state = run.state
            if isinstance(payload, (Mapping, list)):
                state = {**state, RESUME_PAYLOAD_KEY: payload}

            await self._save(run, lease, status=FlowRunStatus.RUNNING, state=state)
            await self._store.events.append(
                run_id, EventType.RUN_RESUMED, {"nodeId": node_id}, node_id=node_id
            )
            logger.info(f"Resumed run {run_id} at node {node_id}")

            return await self._tick_core(run_id, lease)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_run(self, run_id: str) -> FlowRun | None:
        return await self._store.runs.get(run_id)

    async def get_running_run_ids(self) -> list[str]:
        runs = await self._store.runs.find_running()
        return [run.run_id for run in runs]

    async def list_flows(self) -> list[StoredDefinition]:
        return await self._store.definitions.list()

    async def get_timeline(self, run_id: str) -> list[FlowEvent]:
        return await self._store.events.get_timeline(run_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock(self, run_id: str):
        return advisory_lock(
            self._store,
            run_id,
            ttl_ms=self._settings.lock_ttl_ms,
            acquire_timeout_ms=self._settings.lock_acquire_timeout_ms,
            poll_interval_ms=self._settings.lock_poll_interval_ms,
        )

    async def _load(self, run_id: str) -> FlowRun:
        run = await self._store.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _build_context(self, run: FlowRun) -> FlowContext:
        return FlowContext(
            run_id=run.run_id,
            flow_id=run.flow_id,
            flow_version=run.flow_version,
            input=run.input,
            state=run.state,
            outputs=run.outputs,
            tenant_id=run.tenant_id,
            meta=RunMeta(attempts={}, started_at=run.created_at.isoformat(), step=run.step),
            services=self._services,
        )

    def _with_defaults(self, node: NodeDefinition) -> NodeDefinition:
        default_timeout = self._settings.default_node_timeout_ms
        if node.timeout_ms is None and default_timeout:
            return replace(node, timeout_ms=default_timeout)
        return node

    async def _save(self, run: FlowRun, lease: LockLease, **fields) -> FlowRun:
        """Persist ``fields`` after checking the status move and the lease."""
        status = fields.get("status")
        if status is not None and not run.status.can_transition_to(status):
            raise InvalidTransitionError(run.run_id, run.status, status)
        await lease.confirm()
        return await self._store.runs.update(run.run_id, **fields)

    async def _tick_core(self, run_id: str, lease: LockLease) -> FlowRun:
        """One tick. The caller holds the run's lock."""
        run = await self._load(run_id)
        if not run.status.is_active:
            logger.debug(f"Run {run_id} is {run.status}, tick is a no-op")
            return run

        definition = self._require_definition(run.flow_id, run.flow_version)
        node_id = run.current_node_id or definition.entry
        node = definition.nodes.get(node_id)
        if node is None:
            return await self._abort(run, lease, NodeNotFoundError(node_id).to_dict(), node_id)

        ctx = self._build_context(run)
        execution = await execute_node(
            self._with_defaults(node), ctx, self._store.events, self._store.idempotency
        )

        match execution.result:
            case Error(error=node_error):
                return await self._abort(run, lease, node_error.to_dict(), node_id)

            case Wait() as waiting:
                state = apply_patch(ctx.state, waiting.patch)
                outputs = {**ctx.outputs, node_id: waiting.output}
                updated = await self._save(
                    run,
                    lease,
                    status=FlowRunStatus.WAITING,
                    state=state,
                    outputs=outputs,
                    current_node_id=node_id,
                )
                until = waiting.until
                await self._store.events.append(
                    run_id,
                    EventType.RUN_WAITING,
                    {
                        "nodeId": node_id,
                        "reason": waiting.reason,
                        "until": until.isoformat() if isinstance(until, datetime) else until,
                    },
                    node_id=node_id,
                )
                logger.info(f"Run {run_id} waiting at node {node_id}: {waiting.reason}")
                return updated

            case Ok() as done:
                # Replayed patches already took effect once; merge them shallowly.
                if execution.cached:
                    state = shallow_merge(ctx.state, done.patch)
                else:
                    state = apply_patch(ctx.state, done.patch)
                outputs = {**ctx.outputs, node_id: done.output}
                return await self._advance(run, lease, definition, ctx, node_id, state, outputs)

        raise AssertionError(f"Unexpected node result: {execution.result!r}")

    async def _advance(
        self,
        run: FlowRun,
        lease: LockLease,
        definition: FlowDefinition,
        ctx: FlowContext,
        node_id: str,
        state: dict[str, Any],
        outputs: dict[str, Any],
    ) -> FlowRun:
        run_id = run.run_id
        try:
            next_node_id = select_next_node(node_id, definition.edges, ctx.with_data(state, outputs))
        except Exception as e:
            code = getattr(e, "code", None) or "UNKNOWN"
            return await self._abort(run, lease, {"code": str(code), "message": str(e)}, node_id)

        if next_node_id is None:
            updated = await self._save(
                run,
                lease,
                status=FlowRunStatus.COMPLETED,
                state=state,
                outputs=outputs,
                current_node_id=None,
            )
            await self._store.events.append(run_id, EventType.RUN_COMPLETED, {"lastNodeId": node_id})
            logger.info(f"Run {run_id} completed after node {node_id}")
            return updated

        logger.debug(f"Run {run_id}: {node_id} -> {next_node_id}")
        return await self._save(
            run,
            lease,
            status=FlowRunStatus.RUNNING,
            state=state,
            outputs=outputs,
            current_node_id=next_node_id,
            step=run.step + 1,
        )

    async def _abort(
        self, run: FlowRun, lease: LockLease, error: dict[str, Any], node_id: str | None
    ) -> FlowRun:
        run_id = run.run_id
        updated = await self._save(run, lease, status=FlowRunStatus.FAILED, current_node_id=None)
        await self._store.events.append(
            run_id, EventType.RUN_ABORTED, {"error": error}, node_id=node_id
        )
        logger.error(f"Run {run_id} aborted at node {node_id}: {error['code']} {error['message']}")
        return updated
