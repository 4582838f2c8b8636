# storage/jobs_repo.py

"""
Persisted job records for the tick model

Layout in the key-value store:
  <jobtype>_job_<tenantKey>      JSON JobRecord
  <jobtype>_control_<tenantKey>  pending control command (pause|resume|cancel)

Every record write is conditional on the version that was read, so two
writers can never silently overwrite each other.
"""

import logging
from typing import Optional, Tuple

from bulkops.core.errors import JobAlreadyActiveError, JobNotFoundError, JobTerminalError, StaleJobRecordError
from bulkops.models.job import (
    ControlAction,
    JobRecord,
    JobState,
    JobType,
    InvalidTransitionError,
    make_control_key,
    make_job_key,
)
from bulkops.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

STATUS_UPDATE_ATTEMPTS = 5


class JobsRepository:
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def _load_raw(self, job_key: str) -> Tuple[Optional[str], Optional[JobRecord]]:
        raw = await self.store.get(job_key)
        if raw is None:
            return None, None
        record = JobRecord.model_validate_json(raw)
        if record.job_key != job_key:
            raise ValueError(f"Record stored under {job_key} belongs to {record.job_key}")
        return raw, record

    async def load(self, job_type: JobType, tenant_key: str) -> Optional[JobRecord]:
        """Fetch the job record, or None when the key is idle"""
        _, record = await self._load_raw(make_job_key(job_type, tenant_key))
        return record

    async def require(self, job_type: JobType, tenant_key: str) -> JobRecord:
        record = await self.load(job_type, tenant_key)
        if record is None:
            raise JobNotFoundError(make_job_key(job_type, tenant_key))
        return record

    async def create(self, record: JobRecord) -> JobRecord:
        """Store a fresh record; a non-terminal record under the same key blocks it"""
        raw, existing = await self._load_raw(record.job_key)
        if existing is not None and not existing.is_terminal:
            raise JobAlreadyActiveError(record.job_key, existing.status.value)

        # Keep versions increasing across resubmissions so stale writers still lose.
        record.version = existing.version + 1 if existing is not None else 1
        if not await self.store.compare_and_swap(record.job_key, raw, record.model_dump_json()):
            raise StaleJobRecordError(record.job_key, f"Job {record.job_key} was created concurrently")

        # A command left over from a previous run must not hit the new one.
        await self.store.delete(make_control_key(record.job_type, record.tenant_key))
        logger.info(f"Created job {record.job_key} with {record.total} items (version {record.version})")
        return record

    async def save(self, record: JobRecord, expected_version: int) -> JobRecord:
        """Persist ``record`` only if the stored version is still ``expected_version``"""
        raw, current = await self._load_raw(record.job_key)
        if current is None:
            raise JobNotFoundError(record.job_key)
        if current.version != expected_version:
            raise StaleJobRecordError(record.job_key)

        updated = record.model_copy(update={"version": expected_version + 1})
        if not await self.store.compare_and_swap(record.job_key, raw, updated.model_dump_json()):
            raise StaleJobRecordError(record.job_key)

        record.version = updated.version
        return record

    async def update_status(self, job_type: JobType, tenant_key: str, new_status: JobState) -> JobRecord:
        """Targeted status change that retries on conflicting writes"""
        job_key = make_job_key(job_type, tenant_key)
        for attempt in range(1, STATUS_UPDATE_ATTEMPTS + 1):
            record = await self.require(job_type, tenant_key)
            if record.status == new_status:
                return record
            if record.is_terminal:
                raise JobTerminalError(job_key, record.status.value, new_status.value)

            expected_version = record.version
            try:
                record.transition(new_status)
            except InvalidTransitionError:
                raise JobTerminalError(job_key, record.status.value, new_status.value)

            try:
                return await self.save(record, expected_version)
            except StaleJobRecordError:
                logger.debug(f"Status update of {job_key} lost a race (attempt {attempt})")

        raise StaleJobRecordError(job_key, f"Could not update {job_key} after {STATUS_UPDATE_ATTEMPTS} attempts")

    async def delete(self, job_type: JobType, tenant_key: str) -> None:
        await self.store.delete(make_job_key(job_type, tenant_key))
        await self.store.delete(make_control_key(job_type, tenant_key))

    async def get_control(self, job_type: JobType, tenant_key: str) -> Optional[ControlAction]:
        raw = await self.store.get(make_control_key(job_type, tenant_key))
        if raw is None:
            return None
        try:
            return ControlAction(raw.strip().strip('"'))
        except ValueError:
            logger.warning(f"Ignoring unknown control command {raw!r} for {job_type.value}/{tenant_key}")
            return None

    async def set_control(self, job_type: JobType, tenant_key: str, action: ControlAction) -> None:
        await self.store.put(make_control_key(job_type, tenant_key), action.value)

    async def clear_control(self, job_type: JobType, tenant_key: str) -> None:
        await self.store.delete(make_control_key(job_type, tenant_key))
