# services/job_control.py

"""
Job control and status surfaces for persisted (tick-model) jobs

pause/resume are small status-only conditional writes on the record. cancel
goes to the sibling control key instead, so it never collides with a tick
that is persisting progress; the next tick consumes it before anything else.
"""

import logging
from typing import Any, Dict, List, Optional

from bulkops.core.errors import JobTerminalError
from bulkops.models.job import (
    ControlAction,
    JobRecord,
    JobState,
    JobStatusView,
    JobType,
    Outcome,
    make_job_key,
)
from bulkops.services.steps import StepRunner
from bulkops.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class JobControlService:
    def __init__(self, repo: JobsRepository, runner: StepRunner):
        self.repo = repo
        self.runner = runner

    async def submit(
            self,
            job_type: JobType,
            tenant_key: str,
            items: List[Any],
            delay_seconds: float = 0,
            options: Optional[Dict[str, Any]] = None
    ) -> JobRecord:
        """Persist a new job; processing happens on subsequent ticks"""
        await self.runner.check_submission(job_type, tenant_key)
        record = JobRecord.new(job_type, tenant_key, items, delay_seconds, options, status=JobState.RUNNING)
        return await self.repo.create(record)

    async def pause(self, job_type: JobType, tenant_key: str) -> JobRecord:
        record = await self.repo.update_status(job_type, tenant_key, JobState.PAUSED)
        logger.info(f"Paused job {record.job_key} at {record.cursor}/{record.total}")
        return record

    async def resume(self, job_type: JobType, tenant_key: str) -> JobRecord:
        record = await self.repo.update_status(job_type, tenant_key, JobState.RUNNING)
        logger.info(f"Resumed job {record.job_key} at {record.cursor}/{record.total}")
        return record

    async def cancel(self, job_type: JobType, tenant_key: str) -> JobRecord:
        record = await self.repo.require(job_type, tenant_key)
        if record.status == JobState.CANCELED:
            return record
        if record.is_terminal:
            raise JobTerminalError(record.job_key, record.status.value, "cancel")
        await self.repo.set_control(job_type, tenant_key, ControlAction.CANCEL)
        logger.info(f"Cancel command queued for job {record.job_key}")
        return record

    async def apply(self, job_type: JobType, tenant_key: str, action: ControlAction) -> JobStatusView:
        """Dispatch a control command and return the resulting status"""
        handlers = {
            ControlAction.PAUSE: self.pause,
            ControlAction.RESUME: self.resume,
            ControlAction.CANCEL: self.cancel,
        }
        await handlers[ControlAction(action)](job_type, tenant_key)
        return await self.get_status(job_type, tenant_key)

    async def reset(self, job_type: JobType, tenant_key: str) -> None:
        """Delete the record and any pending command; resetting an idle key is a no-op"""
        await self.repo.delete(job_type, tenant_key)
        logger.info(f"Reset job {make_job_key(job_type, tenant_key)}")

    async def get_status(
            self,
            job_type: JobType,
            tenant_key: str,
            include_results: bool = False,
            outcome: Optional[Outcome] = None
    ) -> JobStatusView:
        """Read-only projection of the record; never writes"""
        job_key = make_job_key(job_type, tenant_key)
        try:
            record = await self.repo.load(job_type, tenant_key)
            if record is None:
                return JobStatusView.idle(job_key)
            pending = await self.repo.get_control(job_type, tenant_key)
        except (ValueError, OSError) as e:
            logger.error(f"Could not read job {job_key}: {e}", exc_info=True)
            return JobStatusView(job_key=job_key, status=JobState.FAILED, error=f"Unreadable job record: {e}")
        return record.status_view(include_results=include_results, pending_control=pending, outcome=outcome)

