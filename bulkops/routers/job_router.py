# routers/job_router.py

"""
In-process Job API Routes

Jobs submitted here are driven by the worker's asyncio loop inside this
process and are lost when it exits.
"""

import asyncio
import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from bulkops.core.config import Settings
from bulkops.models.job import (
    ControlAction,
    ControlRequest,
    JobStatusView,
    JobType,
    Outcome,
    SubmitJobRequest,
    SubmitJobResponse,
    UpdateEvent,
    make_job_key,
)
from bulkops.routers.deps import get_app_settings, get_worker
from bulkops.services.worker import JobWorker

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])

EVENT_QUEUE_SIZE = 1000
KEEPALIVE_SECONDS = 15


@router.get("", response_model=Dict[str, JobStatusView])
async def get_jobs_snapshot(worker: JobWorker = Depends(get_worker)):
    """Current state of every job known to this process"""
    return worker.get_snapshot()


@router.get("/events")
async def stream_job_events(request: Request, worker: JobWorker = Depends(get_worker)):
    """Server-sent events: a snapshot first, then incremental updates"""
    queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

    def enqueue(event: UpdateEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event stream queue full, dropping {event.type.value} for {event.job_key}")

    unsubscribe = worker.subscribe(enqueue)
    logger.info("GET /api/jobs/events - Observer connected")

    async def event_source():
        try:
            snapshot = {key: view.model_dump(mode="json") for key, view in worker.get_snapshot().items()}
            yield f"event: snapshot\ndata: {json.dumps(snapshot)}\n\n"
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event.type.value}\ndata: {event.model_dump_json()}\n\n"
        finally:
            unsubscribe()
            logger.info("Observer disconnected from /api/jobs/events")

    return StreamingResponse(event_source(), media_type="text/event-stream")


@router.post("/{job_type}/{site_id}", status_code=202, response_model=SubmitJobResponse)
async def submit_job(
        job_type: JobType,
        site_id: str,
        request: SubmitJobRequest,
        worker: JobWorker = Depends(get_worker),
        settings: Settings = Depends(get_app_settings)
):
    """Start a bulk job processed in the background by this process"""
    items = request.resolve_items(job_type)
    options = request.resolve_options(job_type)
    delay = request.delay_seconds if request.delay_seconds is not None else settings.default_delay_seconds
    logger.info(f"POST /api/jobs/{job_type.value}/{site_id} - {len(items)} items, delay={delay}s")

    record = await worker.submit(job_type, site_id, items, delay, options)

    return SubmitJobResponse(
        job_key=record.job_key,
        status=record.status,
        total=record.total,
        message=f"{job_type.value.capitalize()} job started for {record.total} items"
    )


@router.get("/{job_type}/{site_id}", response_model=JobStatusView)
async def get_job_status(
        job_type: JobType,
        site_id: str,
        include_results: bool = Query(False),
        outcome: Optional[Outcome] = Query(None, description="Only return results with this outcome"),
        worker: JobWorker = Depends(get_worker)
):
    """Progress of one job; ``idle`` when there is none"""
    return worker.get_status(make_job_key(job_type, site_id), include_results=include_results, outcome=outcome)


@router.post("/{job_type}/{site_id}/control", response_model=JobStatusView)
async def control_job(
        job_type: JobType,
        site_id: str,
        request: ControlRequest,
        worker: JobWorker = Depends(get_worker)
):
    """Pause, resume or cancel a job"""
    job_key = make_job_key(job_type, site_id)
    logger.info(f"POST /api/jobs/{job_type.value}/{site_id}/control - action={request.action.value}")

    if request.action == ControlAction.PAUSE:
        worker.pause(job_key)
    elif request.action == ControlAction.RESUME:
        worker.resume(job_key)
    else:
        worker.cancel(job_key)

    return worker.get_status(job_key)


@router.post("/{job_type}/{site_id}/reset")
async def reset_job(job_type: JobType, site_id: str, worker: JobWorker = Depends(get_worker)):
    """Forget a job so the key can start clean"""
    job_key = make_job_key(job_type, site_id)
    await worker.reset(job_key)
    return {"success": True, "message": f"Job {job_key} reset."}
