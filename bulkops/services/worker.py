# services/worker.py

"""
In-process sequential worker - drives bulk jobs with an asyncio loop per job

The worker is a registry owned by the hosting process (created by
create_app). Records live only as long as the process does. Each job key gets
its own task; the loop honors pause/cancel at iteration boundaries and during
the inter-item countdown, never in the middle of an item.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from bulkops.core.errors import JobAlreadyActiveError, JobNotFoundError, JobTerminalError
from bulkops.models.job import (
    JobRecord,
    JobState,
    JobStatusView,
    JobType,
    Outcome,
    UpdateEvent,
    UpdateType,
    make_job_key,
)
from bulkops.services.steps import StepRunner
from bulkops.utils.cancel import JobSignals

logger = logging.getLogger(__name__)

JobObserver = Callable[[UpdateEvent], Any]


@dataclass
class _ActiveJob:
    record: JobRecord
    signals: JobSignals
    task: Optional[asyncio.Task] = None


class JobWorker:
    def __init__(self, runner: StepRunner):
        self.runner = runner
        self._jobs: Dict[str, _ActiveJob] = {}
        self._observers: List[JobObserver] = []

    # ---------- Observers ----------

    def subscribe(self, callback: JobObserver) -> Callable[[], bool]:
        """Register an observer; returns a handle that unsubscribes it"""
        self._observers.append(callback)
        logger.debug(f"Observer subscribed ({len(self._observers)} total)")
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: JobObserver) -> bool:
        try:
            self._observers.remove(callback)
            return True
        except ValueError:
            return False

    def _emit(self, event_type: UpdateType, job_key: str, **payload: Any) -> None:
        event = UpdateEvent(type=event_type, job_key=job_key, payload=payload)
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Observer failed on {event_type.value} for {job_key}: {e}", exc_info=True)

    # ---------- Commands ----------

    def _require(self, job_key: str) -> _ActiveJob:
        entry = self._jobs.get(job_key)
        if entry is None:
            raise JobNotFoundError(job_key)
        return entry

    async def submit(
            self,
            job_type: JobType,
            tenant_key: str,
            items: List[Any],
            delay_seconds: float = 0,
            options: Optional[Dict[str, Any]] = None
    ) -> JobRecord:
        """Create a job and start its loop; rejects keys with a live job"""
        job_key = make_job_key(job_type, tenant_key)
        await self.runner.check_submission(job_type, tenant_key)

        existing = self._jobs.get(job_key)
        if existing is not None and not existing.record.is_terminal:
            raise JobAlreadyActiveError(job_key, existing.record.status.value)

        record = JobRecord.new(job_type, tenant_key, items, delay_seconds, options, status=JobState.RUNNING)
        entry = _ActiveJob(record=record, signals=JobSignals())
        self._jobs[job_key] = entry

        logger.info(f"Starting job {job_key}: {record.total} items, delay={delay_seconds}s")
        self._emit(
            UpdateType.STARTED,
            job_key,
            status=record.status.value,
            processed=0,
            total=record.total,
            progress=0.0,
            results=[],
        )
        entry.task = asyncio.create_task(self._run(entry), name=f"bulk-job:{job_key}")
        return record

    def pause(self, job_key: str) -> JobRecord:
        entry = self._require(job_key)
        record = entry.record
        if record.is_terminal:
            raise JobTerminalError(job_key, record.status.value, "pause")
        if record.transition(JobState.PAUSED):
            entry.signals.pause()
            logger.info(f"Paused job {job_key} at {record.cursor}/{record.total}")
            self._emit(UpdateType.PROGRESS, job_key, status=record.status.value)
        return record

    def resume(self, job_key: str) -> JobRecord:
        entry = self._require(job_key)
        record = entry.record
        if record.is_terminal:
            raise JobTerminalError(job_key, record.status.value, "resume")
        if record.transition(JobState.RUNNING):
            entry.signals.resume()
            logger.info(f"Resumed job {job_key} at {record.cursor}/{record.total}")
            self._emit(UpdateType.PROGRESS, job_key, status=record.status.value)
        return record

    def cancel(self, job_key: str) -> JobRecord:
        """Request cancellation; the loop stops before the next item"""
        entry = self._require(job_key)
        record = entry.record
        if record.status == JobState.CANCELED:
            return record
        if record.is_terminal:
            raise JobTerminalError(job_key, record.status.value, "cancel")
        entry.signals.request_cancel()
        logger.info(f"Cancellation requested for job {job_key}")
        return record

    async def _stop(self, entry: _ActiveJob) -> None:
        if entry.task is not None and not entry.task.done():
            entry.signals.request_cancel()
            entry.task.cancel()
            await asyncio.gather(entry.task, return_exceptions=True)
        # A task cancelled before its first step never enters the loop body.
        if not entry.record.is_terminal:
            entry.record.transition(JobState.CANCELED)

    async def reset(self, job_key: str) -> None:
        """Forget a job, stopping its loop if one is still running"""
        entry = self._jobs.pop(job_key, None)
        if entry is None:
            return
        await self._stop(entry)
        logger.info(f"Reset job {job_key}")

    # ---------- Queries ----------

    def get_status(
            self,
            job_key: str,
            include_results: bool = False,
            outcome: Optional[Outcome] = None
    ) -> JobStatusView:
        entry = self._jobs.get(job_key)
        if entry is None:
            return JobStatusView.idle(job_key)
        return entry.record.status_view(include_results=include_results, outcome=outcome)

    def get_snapshot(self, include_results: bool = True) -> Dict[str, JobStatusView]:
        """Current state of every known job, for observers attaching late"""
        return {key: entry.record.status_view(include_results=include_results) for key, entry in self._jobs.items()}

    async def wait(self, job_key: str) -> JobRecord:
        """Wait for the job's loop to finish and return its record"""
        entry = self._require(job_key)
        if entry.task is not None:
            await asyncio.shield(entry.task)
        return entry.record

    async def aclose(self) -> None:
        """Stop every running loop (process shutdown)"""
        running = [entry for entry in self._jobs.values() if not entry.record.is_terminal]
        if running:
            logger.info(f"Stopping {len(running)} running job(s)")
            await asyncio.gather(*(self._stop(entry) for entry in running))

    # ---------- Loop ----------

    async def _countdown(self, entry: _ActiveJob) -> bool:
        """Wait the inter-item delay, emitting one countdown event per second.

        Returns False when interrupted by pause or cancellation.
        """
        record, signals = entry.record, entry.signals
        loop = asyncio.get_running_loop()
        deadline = loop.time() + record.delay_seconds
        signals.clear_wake()
        last_emitted = None

        while True:
            if signals.interrupted:
                self._emit(UpdateType.COUNTDOWN, record.job_key, countdown=0)
                return False
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            seconds = math.ceil(remaining)
            if seconds != last_emitted:
                self._emit(UpdateType.COUNTDOWN, record.job_key, countdown=seconds)
                last_emitted = seconds
            await signals.wait(remaining - (seconds - 1))

        self._emit(UpdateType.COUNTDOWN, record.job_key, countdown=0)
        return True

    async def _run(self, entry: _ActiveJob) -> None:
        record, signals = entry.record, entry.signals
        job_key = record.job_key

        try:
            while record.has_remaining:
                if signals.cancelled:
                    break

                if signals.paused:
                    await signals.wait_until_resumed()
                    continue

                if record.cursor > 0 and record.delay_seconds > 0:
                    if not await self._countdown(entry):
                        continue

                result = await self.runner.advance(record)
                self._emit(
                    UpdateType.PROGRESS,
                    job_key,
                    status=record.status.value,
                    processed=record.cursor,
                    progress=record.progress,
                    result=result.model_dump(mode="json"),
                )

            if not record.is_terminal and signals.cancelled:
                record.transition(JobState.CANCELED)
                logger.info(f"Job {job_key} canceled at {record.cursor}/{record.total}")

        except asyncio.CancelledError:
            if not record.is_terminal:
                record.transition(JobState.CANCELED)
            logger.info(f"Job {job_key} loop stopped at {record.cursor}/{record.total}")
            raise

        except Exception as e:
            logger.error(f"Job {job_key} failed: {e}", exc_info=True)
            record.error = str(e)
            if not record.is_terminal:
                record.transition(JobState.FAILED)

        finally:
            self._emit(
                UpdateType.DONE,
                job_key,
                status=record.status.value,
                processed=record.cursor,
                progress=record.progress,
                error=record.error,
            )
