from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .controller import RunController, RunHandle
from .errors import DefinitionError
from .events import Event
from .loader import load_definition_text
from .model import Run, Trigger, TriggerEvent
from .settings import host_environment

# -------------------- Schemas --------------------

class TriggerIn(BaseModel):
    event: TriggerEvent = TriggerEvent.PUSH
    repository: str
    ref: str = "refs/heads/main"
    token: str = ""
    sha: Optional[str] = None
    actor: Optional[str] = None
    inputs: dict[str, str] = Field(default_factory=dict)

class CreateRunRequest(BaseModel):
    definition: str  # YAML document
    trigger: TriggerIn

class CreateRunResponse(BaseModel):
    run_id: str
    status: str

class StepResponse(BaseModel):
    step_id: str
    status: str
    reason: str | None
    message: str | None
    exit_code: int | None
    outputs: dict[str, str]
    stdout: str
    stderr: str
    started_at: datetime | None
    finished_at: datetime | None

class RunResponse(BaseModel):
    run_id: str
    definition: str
    status: str
    error: str | None
    aborted: bool
    started_at: datetime | None
    finished_at: datetime | None
    published: bool | None = None
    steps: list[StepResponse]

class EventResponse(BaseModel):
    seq: int
    kind: str
    step_id: str | None
    timestamp: datetime | None
    data: dict[str, Any]


def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        run_id=run.run_id,
        definition=run.definition,
        status=run.status.value,
        error=run.error,
        aborted=run.aborted,
        started_at=run.started_at,
        finished_at=run.finished_at,
        published=run.publish_result.ok if run.publish_result is not None else None,
        steps=[
            StepResponse(
                step_id=r.step_id,
                status=r.status.value,
                reason=r.reason.value if r.reason else None,
                message=r.message,
                exit_code=r.exit_code,
                outputs=dict(r.outputs),
                stdout=r.stdout.decode("utf-8", errors="replace"),
                stderr=r.stderr.decode("utf-8", errors="replace"),
                started_at=r.started_at,
                finished_at=r.finished_at,
            )
            for r in run.results.values()
        ],
    )


def _event_response(event: Event) -> EventResponse:
    return EventResponse(
        seq=event.seq,
        kind=event.kind.value,
        step_id=event.step_id,
        timestamp=event.timestamp,
        data=dict(event.data),
    )


def create_app(controller: RunController | None = None) -> FastAPI:
    app = FastAPI(title="flowci control plane")
    ctl = controller or RunController(host_env=host_environment())
    app.state.controller = ctl

    def _lookup(run_id: str) -> RunHandle:
        try:
            return ctl.get(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Run not found")

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse, status_code=201)
    async def create_run(req: CreateRunRequest):
        try:
            definition = load_definition_text(req.definition, source="request")
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))

        t = req.trigger
        trigger = Trigger(
            event=t.event,
            repository=t.repository,
            ref=t.ref,
            token=t.token,
            sha=t.sha,
            actor=t.actor,
            inputs=t.inputs,
        )
        handle = ctl.start(definition, trigger)
        return CreateRunResponse(run_id=handle.run_id, status=ctl.status(handle).status.value)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        return _run_response(ctl.status(_lookup(run_id)))

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    async def cancel_run(run_id: str):
        handle = _lookup(run_id)
        if handle.done.is_set():
            raise HTTPException(status_code=409, detail=f"Run already {handle.run.status.value}")
        ctl.cancel(handle)
        return _run_response(ctl.status(handle))

    @app.get("/runs/{run_id}/events", response_model=list[EventResponse])
    async def get_events(run_id: str, offset: int = Query(default=0, ge=0)):
        handle = _lookup(run_id)
        return [_event_response(e) for e in handle.bus.history(offset)]

    return app
