"""Job endpoints for the idea pipeline FastAPI backend."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect

from ..aggregate import aggregate
from ..errors import JobAlreadyExistsError, JobNotFoundError
from ..pipeline import PipelineController
from ..registry import JobRegistry
from ..schemas import (
    AnalysisResponse,
    Job,
    JobCreateRequest,
    JobCreateResponse,
    JobSnapshotResponse,
    MetricsResponse,
    StageDefinition,
)
from ..stages import list_stage_definitions

logger = logging.getLogger(__name__)

WS_CLOSE_NOT_FOUND = 4404

router = APIRouter(prefix="/jobs", tags=["jobs"])
compat_router = APIRouter(tags=["compat"])


def _controller(request: Request) -> PipelineController:
    return request.app.state.controller


def _load_job(registry: JobRegistry, job_id: str) -> Job:
    try:
        return registry.get(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"No job found with id '{job_id}'.") from exc


def build_snapshot(job: Job, controller: PipelineController) -> JobSnapshotResponse:
    """Shape a registry snapshot for the polling endpoint."""

    return JobSnapshotResponse(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        current_stage=job.current_stage,
        results=aggregate(job, controller.stages),
        error=job.terminal_error,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}


@router.get("/stages", response_model=list[StageDefinition])
async def list_stages(request: Request) -> list[StageDefinition]:
    """Expose stage metadata to the UI."""

    return list_stage_definitions(_controller(request).stages)


@router.get("/metrics", response_model=MetricsResponse)
async def fetch_metrics(request: Request) -> MetricsResponse:
    """Inference usage, latency and job counts for dashboards."""

    return _controller(request).metrics()


@router.post("", status_code=202, response_model=JobCreateResponse)
async def create_job(payload: JobCreateRequest, request: Request) -> JobCreateResponse:
    """Accept an idea and start its analysis in the background."""

    try:
        job = await _controller(request).submit(payload.idea_text)
    except JobAlreadyExistsError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return JobCreateResponse(job_id=job.id)


@router.get("/{job_id}", response_model=JobSnapshotResponse)
async def fetch_job(job_id: str, request: Request) -> JobSnapshotResponse:
    """Return the current snapshot of a job, with partial results."""

    controller = _controller(request)
    return build_snapshot(_load_job(controller.registry, job_id), controller)


@router.websocket("/{job_id}/events")
async def stream_job_events(websocket: WebSocket, job_id: str) -> None:
    """Push stage events until the job's terminal event."""

    controller: PipelineController = websocket.app.state.controller
    await websocket.accept()
    try:
        controller.registry.get(job_id)
    except JobNotFoundError:
        await websocket.close(code=WS_CLOSE_NOT_FOUND, reason=f"No job found with id '{job_id}'.")
        return

    events = controller.broadcaster.subscribe(job_id)
    try:
        async for event in events:
            await websocket.send_json(event.model_dump(mode="json", by_alias=True))
    except WebSocketDisconnect:
        logger.info("Subscriber for job %s disconnected", job_id)
        return
    finally:
        await events.aclose()
    await websocket.close()


@compat_router.get("/analysis/{job_id}", response_model=AnalysisResponse)
async def fetch_analysis(job_id: str, request: Request) -> AnalysisResponse:
    """Older read path keyed by analysis id; served from the job snapshot."""

    controller = _controller(request)
    job = _load_job(controller.registry, job_id)
    return AnalysisResponse(analysis_id=job.id, status=job.status, results=aggregate(job, controller.stages))
