# services/tick_executor.py

"""
Tick-driven stateless executor

Each call advances a persisted job by at most one item. An external caller
(a browser poll, ``scripts/tick_job.py``, a cron) provides the scheduling.

Delivery is at-least-once: the downstream call for an item happens before
its result is persisted. If that write fails (store error, or another tick
advanced the same record) the item may be attempted again by a later tick.
A conflicting write that only changed ``status`` (pause/resume) is merged:
the tick is the only writer of cursor/results, so its step is re-applied on
top of the fresh record.
"""

import logging
from typing import Optional

from bulkops.core.errors import JobNotFoundError, StaleJobRecordError
from bulkops.models.job import (
    ControlAction,
    ItemResult,
    JobRecord,
    JobState,
    JobType,
    TickResponse,
    make_job_key,
)
from bulkops.services.steps import StepRunner
from bulkops.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

MERGE_ATTEMPTS = 3


def _response(record: JobRecord, message: str, last_result: Optional[ItemResult] = None) -> TickResponse:
    return TickResponse(
        job_key=record.job_key,
        message=message,
        status=record.status,
        processed=record.cursor,
        total=record.total,
        last_result=last_result,
    )


class TickExecutor:
    def __init__(self, repo: JobsRepository, runner: StepRunner):
        self.repo = repo
        self.runner = runner

    async def tick(self, job_type: JobType, tenant_key: str) -> TickResponse:
        """Advance the job by one item"""
        job_key = make_job_key(job_type, tenant_key)
        record = await self.repo.load(job_type, tenant_key)
        if record is None:
            raise JobNotFoundError(job_key)

        # Cancel wins over every other state, including paused.
        command = await self.repo.get_control(job_type, tenant_key)
        if command == ControlAction.CANCEL:
            return await self._apply_cancel(record)

        if record.status == JobState.CANCELED:
            return _response(record, "Job was canceled.")
        if record.status == JobState.FAILED:
            return _response(record, f"Job failed: {record.error or 'unknown error'}")
        if record.status == JobState.PAUSED:
            return _response(record, "Job is paused.")

        if not record.has_remaining:
            if record.status != JobState.COMPLETE:
                expected_version = record.version
                record.transition(JobState.COMPLETE)
                await self.repo.save(record, expected_version)
            return _response(record, "Job is already complete.")

        wait_seconds = record.seconds_until_next_step()
        if wait_seconds > 0:
            return _response(record, f"Waiting {wait_seconds:.1f}s before the next item.")

        expected_version = record.version
        if record.status == JobState.QUEUED:
            record.transition(JobState.RUNNING)

        attempted_cursor = record.cursor
        result = await self.runner.advance(record)
        record = await self._persist_step(record, expected_version, attempted_cursor, result)

        if record.status == JobState.COMPLETE:
            message = f"Processed {record.cursor}/{record.total}. Job complete."
        else:
            message = f"Processed {record.cursor}/{record.total}."
        return _response(record, message, result)

    async def _apply_cancel(self, record: JobRecord) -> TickResponse:
        job_type, tenant_key = record.job_type, record.tenant_key
        for _ in range(MERGE_ATTEMPTS):
            if record.is_terminal:
                break
            expected_version = record.version
            record.transition(JobState.CANCELED)
            try:
                await self.repo.save(record, expected_version)
                break
            except StaleJobRecordError:
                record = await self.repo.require(job_type, tenant_key)
        else:
            raise StaleJobRecordError(record.job_key, f"Could not cancel {record.job_key}: record keeps changing")

        # Consume the command only once the canceled status is durable.
        await self.repo.clear_control(job_type, tenant_key)
        logger.info(f"Tick canceled job {record.job_key} at {record.cursor}/{record.total}")
        if record.status != JobState.CANCELED:
            return _response(record, f"Job already {record.status.value}; cancel ignored.")
        return _response(record, "Job canceled.")

    async def _persist_step(
            self,
            record: JobRecord,
            expected_version: int,
            attempted_cursor: int,
            result: ItemResult
    ) -> JobRecord:
        """Conditionally write the step; merge onto status-only concurrent changes"""
        for attempt in range(1, MERGE_ATTEMPTS + 1):
            try:
                return await self.repo.save(record, expected_version)
            except StaleJobRecordError:
                logger.info(f"Tick on {record.job_key} lost a write race (attempt {attempt}), merging")

            fresh = await self.repo.load(record.job_type, record.tenant_key)
            if fresh is None:
                raise JobNotFoundError(record.job_key)
            if fresh.cursor != attempted_cursor or fresh.is_terminal:
                logger.warning(
                    f"Tick on {record.job_key} overlapped with another writer "
                    f"(cursor {attempted_cursor} -> {fresh.cursor}, status {fresh.status.value}); "
                    f"result for item {attempted_cursor} not recorded"
                )
                raise StaleJobRecordError(
                    record.job_key,
                    f"Job {record.job_key} advanced concurrently; item {attempted_cursor} may be re-attempted",
                )

            expected_version = fresh.version
            fresh.record_result(result)
            if not fresh.has_remaining:
                fresh.transition(JobState.COMPLETE)
            elif fresh.status == JobState.QUEUED:
                fresh.transition(JobState.RUNNING)
            record = fresh

        raise StaleJobRecordError(record.job_key, f"Could not persist step for {record.job_key}")
