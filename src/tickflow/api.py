"""HTTP run API over a FlowEngine.

Routes:
    POST /v1/runs/start             start a run ({flowId, version, ...})
    POST /v1/runs/{run_id}/tick     advance a run by one node
    POST /v1/runs/{run_id}/resume   resume a waiting run ({payload})
    GET  /v1/runs/{run_id}          run row
    GET  /v1/runs/{run_id}/timeline ordered events
    GET  /v1/flows                  persisted definitions

Mount the router into an existing app, or serve create_app() directly:

    app = create_app(engine, definitions=[build_flow_definition(Onboarding)])
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from tickflow.engine import FlowEngine
from tickflow.errors import FlowNotFoundError, LockTimeoutError, RunNotFoundError
from tickflow.models import FlowDefinition

logger = logging.getLogger(__name__)


class StartRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Optional here so a missing id is a 400, not a schema 422.
    flow_id: str | None = Field(default=None, alias="flowId")
    version: str | None = None
    tenant_id: str | None = Field(default=None, alias="tenantId")
    input: Any = None
    initial_state: dict[str, Any] | None = Field(default=None, alias="initialState")


class ResumeRunRequest(BaseModel):
    payload: Any = None


def build_run_router(engine: FlowEngine) -> APIRouter:
    router = APIRouter(prefix="/v1")

    @router.post("/runs/start")
    async def start_run(request: StartRunRequest) -> dict[str, Any]:
        if not request.flow_id or not request.version:
            raise HTTPException(status_code=400, detail="flowId and version are required")
        try:
            started = await engine.start_run(
                request.flow_id,
                request.version,
                input=request.input if request.input is not None else {},
                tenant_id=request.tenant_id,
                initial_state=request.initial_state,
            )
        except FlowNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return started.to_dict()

    @router.post("/runs/{run_id}/tick")
    async def tick_run(run_id: str) -> dict[str, Any]:
        try:
            run = await engine.tick(run_id)
        except (RunNotFoundError, FlowNotFoundError) as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except LockTimeoutError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return run.to_dict()

    @router.post("/runs/{run_id}/resume")
    async def resume_run(run_id: str, request: ResumeRunRequest | None = None) -> dict[str, Any]:
        payload = request.payload if request is not None else None
        try:
            run = await engine.resume_run(run_id, payload)
        except (RunNotFoundError, FlowNotFoundError) as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except LockTimeoutError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {
            "runId": run.run_id,
            "status": run.status.value,
            "flowId": run.flow_id,
            "flowVersion": run.flow_version,
            "outputs": run.outputs,
        }

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str) -> dict[str, Any]:
        run = await engine.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run.to_dict()

    @router.get("/runs/{run_id}/timeline")
    async def get_timeline(run_id: str) -> list[dict[str, Any]]:
        if await engine.get_run(run_id) is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return [event.to_dict() for event in await engine.get_timeline(run_id)]

    @router.get("/flows")
    async def list_flows() -> list[dict[str, Any]]:
        return [
            {"flowId": d.flow_id, "version": d.version, "definition": d.definition_json}
            for d in await engine.list_flows()
        ]

    return router


def create_app(engine: FlowEngine, definitions: Iterable[FlowDefinition] = ()) -> FastAPI:
    """
    FastAPI app serving the run API.

    On startup the engine's store is connected and ``definitions`` are
    registered; the store is closed on shutdown.
    """
    definitions = list(definitions)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.store.connect()
        for definition in definitions:
            await engine.register_definition(definition)
        logger.info(f"Run API ready with {len(definitions)} definitions")
        try:
            yield
        finally:
            await engine.store.close()

    app = FastAPI(title="tickflow", lifespan=lifespan)
    app.include_router(build_run_router(engine))
    return app
