# routers/tick_router.py

"""
Tick-driven Job API Routes

Nothing runs in the background here: the job record lives in the key-value
store and a client advances it one item per POST to ``/tick``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from bulkops.core.config import Settings
from bulkops.models.job import (
    ControlRequest,
    JobStatusView,
    JobType,
    Outcome,
    SubmitJobRequest,
    SubmitJobResponse,
    TickResponse,
)
from bulkops.routers.deps import get_app_settings, get_job_control, get_tick_executor
from bulkops.services.job_control import JobControlService
from bulkops.services.tick_executor import TickExecutor

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tick-jobs", tags=["Tick Jobs"])


@router.post("/{job_type}/{site_id}", status_code=202, response_model=SubmitJobResponse)
async def submit_tick_job(
        job_type: JobType,
        site_id: str,
        request: SubmitJobRequest,
        control: JobControlService = Depends(get_job_control),
        settings: Settings = Depends(get_app_settings)
):
    """Persist a job that advances on each tick"""
    items = request.resolve_items(job_type)
    options = request.resolve_options(job_type)
    delay = request.delay_seconds if request.delay_seconds is not None else settings.default_delay_seconds
    logger.info(f"POST /api/tick-jobs/{job_type.value}/{site_id} - {len(items)} items, delay={delay}s")

    record = await control.submit(job_type, site_id, items, delay, options)

    return SubmitJobResponse(
        job_key=record.job_key,
        status=record.status,
        total=record.total,
        message=f"{job_type.value.capitalize()} job queued for {record.total} items; tick to advance"
    )


@router.get("/{job_type}/{site_id}", response_model=JobStatusView)
async def get_tick_job_status(
        job_type: JobType,
        site_id: str,
        include_results: bool = Query(False),
        outcome: Optional[Outcome] = Query(None, description="Only return results with this outcome"),
        control: JobControlService = Depends(get_job_control)
):
    """Progress of one persisted job; ``idle`` when there is none"""
    return await control.get_status(job_type, site_id, include_results=include_results, outcome=outcome)


@router.post("/{job_type}/{site_id}/tick", response_model=TickResponse)
async def tick_job(
        job_type: JobType,
        site_id: str,
        executor: TickExecutor = Depends(get_tick_executor)
):
    """Advance the job by at most one item"""
    response = await executor.tick(job_type, site_id)
    logger.info(f"POST /api/tick-jobs/{job_type.value}/{site_id}/tick - {response.message}")
    return response


@router.post("/{job_type}/{site_id}/control", response_model=JobStatusView)
async def control_tick_job(
        job_type: JobType,
        site_id: str,
        request: ControlRequest,
        control: JobControlService = Depends(get_job_control)
):
    """Pause, resume or cancel a persisted job"""
    logger.info(f"POST /api/tick-jobs/{job_type.value}/{site_id}/control - action={request.action.value}")
    return await control.apply(job_type, site_id, request.action)


@router.post("/{job_type}/{site_id}/reset")
async def reset_tick_job(
        job_type: JobType,
        site_id: str,
        control: JobControlService = Depends(get_job_control)
):
    """Delete the persisted job and any pending command"""
    await control.reset(job_type, site_id)
    return {"success": True, "message": "Job status reset successfully."}
