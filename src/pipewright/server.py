# server.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .dispatcher import Dispatcher
from .errors import RunNotFound
from .model import Event, EventKind, JobRecord, Run
from .recorder import RunRecorder
from .triggers import EventQueue, event_from_webhook

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: str
    branch: str = ""
    sha: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

class EventAccepted(BaseModel):
    event_id: str
    kind: str
    branch: str

class JobResponse(BaseModel):
    name: str
    status: str
    started_at: datetime | None
    finished_at: datetime | None
    exit_code: int | None
    error: str | None
    failed_step: str | None
    skipped_because: str | None

class JobLogsResponse(JobResponse):
    logs: str

class RunResponse(BaseModel):
    id: str
    pipeline: str
    event_kind: str
    branch: str
    status: str
    created_at: datetime
    finished_at: datetime | None
    jobs: list[JobResponse]

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


def _job_response(rec: JobRecord) -> dict[str, Any]:
    return {
        "name": rec.name,
        "status": rec.status.value,
        "started_at": rec.started_at,
        "finished_at": rec.finished_at,
        "exit_code": rec.exit_code,
        "error": rec.error,
        "failed_step": rec.failed_step,
        "skipped_because": rec.skipped_because,
    }


def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        id=run.id,
        pipeline=run.pipeline,
        event_kind=run.event_kind.value,
        branch=run.branch,
        status=run.status.value,
        created_at=run.created_at,
        finished_at=run.finished_at,
        jobs=[JobResponse(**_job_response(rec)) for rec in run.jobs.values()],
    )


# -------------------- App --------------------

def create_app(queue: EventQueue, recorder: RunRecorder, dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    """
    Control plane: events go onto the queue, run state comes from the recorder.

    dispatcher is only needed for cancellation, which must reach the
    process that is executing the run.
    """
    app = FastAPI(title="pipewright control plane")

    def _enqueue(event: Event) -> EventAccepted:
        queue.put(event)
        return EventAccepted(event_id=event.id, kind=event.kind.value, branch=event.branch)

    def _get_run(run_id: str) -> Run:
        try:
            return recorder.get(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventAccepted, status_code=202)
    def post_event(req: EventRequest):
        try:
            kind = EventKind.parse(req.kind)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _enqueue(Event(kind=kind, branch=req.branch, sha=req.sha, payload=req.payload))

    @app.post("/webhooks/github", response_model=EventAccepted, status_code=202)
    def github_webhook(payload: dict[str, Any], x_github_event: str = Header(...)):
        try:
            event = event_from_webhook(x_github_event, payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _enqueue(event)

    @app.get("/runs", response_model=list[RunResponse])
    def list_runs(limit: int = 20):
        return [_run_response(run) for run in recorder.list_runs(limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        return _run_response(_get_run(run_id))

    @app.get("/runs/{run_id}/jobs/{name}", response_model=JobLogsResponse)
    def get_job(run_id: str, name: str):
        run = _get_run(run_id)
        rec = run.jobs.get(name)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"Job {name} not found in run {run_id}")
        return JobLogsResponse(**_job_response(rec), logs=rec.logs)

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        run = _get_run(run_id)
        if run.status.is_terminal:
            raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")
        cancelled = dispatcher is not None and dispatcher.scheduler.cancel(run_id)
        return CancelResponse(run_id=run_id, cancelled=cancelled)

    return app
