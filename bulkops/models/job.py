# models/job.py

"""
Job-related data models

A JobRecord is the unit of bulk work shared by both execution models: the
in-process worker keeps it in memory, the tick executor persists it as JSON.
"""

import re
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bulkops.core.errors import InvalidArgumentError


class JobState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELED = "canceled"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.CANCELED, JobState.COMPLETE, JobState.FAILED})

# paused -> complete covers an in-flight final item finishing after a pause request.
ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.PAUSED, JobState.CANCELED, JobState.COMPLETE, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.PAUSED, JobState.CANCELED, JobState.COMPLETE, JobState.FAILED}),
    JobState.PAUSED: frozenset({JobState.RUNNING, JobState.CANCELED, JobState.COMPLETE, JobState.FAILED}),
}


class JobType(str, Enum):
    REGISTRATION = "registration"
    DELETION = "deletion"
    WEBHOOK = "webhook"


class ControlAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class UpdateType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COUNTDOWN = "countdown-tick"
    DONE = "done"


class InvalidTransitionError(RuntimeError):
    """Raised when a status change would break the job state machine."""


def now_iso() -> str:
    return datetime.now().isoformat()


def make_job_key(job_type: JobType, tenant_key: str) -> str:
    """Namespaced storage key of a job record, e.g. ``webhook_job_<siteId>``"""
    tenant_key = (tenant_key or "").strip()
    if not tenant_key or re.search(r"\s", tenant_key):
        raise InvalidArgumentError("Tenant key must be a non-empty string without whitespace.")
    return f"{JobType(job_type).value}_job_{tenant_key}"


def make_control_key(job_type: JobType, tenant_key: str) -> str:
    """Sibling key holding the out-of-band control command of a job"""
    make_job_key(job_type, tenant_key)
    return f"{JobType(job_type).value}_control_{tenant_key.strip()}"


def parse_email_list(text: str) -> List[str]:
    """Split free text on commas/whitespace and keep tokens that look like emails"""
    return [token for token in re.split(r"[,\s]+", text or "") if "@" in token]


class ItemResult(BaseModel):
    item: Any
    outcome: Outcome
    detail: str
    response: Optional[Any] = None


class StepOutcome(BaseModel):
    """What a step executor reports for one item."""

    outcome: Outcome
    detail: str
    response: Optional[Any] = None

    @classmethod
    def success(cls, detail: str, response: Any = None) -> "StepOutcome":
        return cls(outcome=Outcome.SUCCESS, detail=detail, response=response)

    @classmethod
    def failed(cls, detail: str, response: Any = None) -> "StepOutcome":
        return cls(outcome=Outcome.FAILED, detail=detail, response=response)


class JobStatusView(BaseModel):
    job_key: Optional[str] = None
    status: JobState
    processed: int = 0
    total: int = 0
    progress: float = 0.0
    succeeded: int = 0
    failed: int = 0
    last_result: Optional[ItemResult] = None
    results: Optional[List[ItemResult]] = None
    pending_control: Optional[ControlAction] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def idle(cls, job_key: Optional[str] = None) -> "JobStatusView":
        return cls(job_key=job_key, status=JobState.IDLE)


class JobRecord(BaseModel):
    job_key: str
    job_type: JobType
    tenant_key: str
    status: JobState = JobState.QUEUED
    items: List[Any] = Field(default_factory=list)
    cursor: int = 0
    results: List[ItemResult] = Field(default_factory=list)
    delay_seconds: float = 0
    options: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    last_step_at: Optional[float] = None
    error: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def new(
            cls,
            job_type: JobType,
            tenant_key: str,
            items: List[Any],
            delay_seconds: float = 0,
            options: Optional[Dict[str, Any]] = None,
            status: JobState = JobState.RUNNING
    ) -> "JobRecord":
        """Create a fresh record with cursor at the first item"""
        return cls(
            job_key=make_job_key(job_type, tenant_key),
            job_type=job_type,
            tenant_key=tenant_key,
            status=status,
            items=list(items),
            delay_seconds=delay_seconds,
            options=dict(options or {}),
        )

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def has_remaining(self) -> bool:
        return self.cursor < len(self.items)

    @property
    def progress(self) -> float:
        if self.status == JobState.COMPLETE or not self.items:
            return 100.0 if self.status == JobState.COMPLETE else 0.0
        return round(self.cursor / len(self.items) * 100, 2)

    @property
    def last_result(self) -> Optional[ItemResult]:
        return self.results[-1] if self.results else None

    def transition(self, new_status: JobState) -> bool:
        """Move to ``new_status``; returns False when already there"""
        new_status = JobState(new_status)
        if new_status == self.status:
            return False
        if new_status not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(f"{self.job_key}: {self.status.value} -> {new_status.value} is not allowed")
        self.status = new_status
        self.updated_at = now_iso()
        if new_status in TERMINAL_STATES:
            self.completed_at = self.updated_at
        return True

    def record_result(self, result: ItemResult) -> None:
        """Append the outcome of items[cursor] and move the cursor past it"""
        if self.is_terminal:
            raise InvalidTransitionError(f"{self.job_key} is {self.status.value}; results are frozen")
        if not self.has_remaining:
            raise InvalidTransitionError(f"{self.job_key} has no unprocessed items")
        self.results.append(result)
        self.cursor += 1
        self.last_step_at = time.time()
        self.updated_at = now_iso()
        self.check_invariants()

    def seconds_until_next_step(self, now: Optional[float] = None) -> float:
        """Remaining inter-item delay before items[cursor] may be attempted"""
        if not self.delay_seconds or self.last_step_at is None:
            return 0.0
        now = time.time() if now is None else now
        return max(0.0, self.last_step_at + self.delay_seconds - now)

    def check_invariants(self) -> None:
        if not 0 <= self.cursor <= len(self.items):
            raise AssertionError(f"{self.job_key}: cursor {self.cursor} outside 0..{len(self.items)}")
        if len(self.results) != self.cursor:
            raise AssertionError(f"{self.job_key}: {len(self.results)} results for cursor {self.cursor}")

    def status_view(
            self,
            include_results: bool = False,
            pending_control: Optional[ControlAction] = None,
            outcome: Optional[Outcome] = None
    ) -> JobStatusView:
        """Read-only projection; ``outcome`` returns only the results with that outcome"""
        succeeded = sum(1 for r in self.results if r.outcome == Outcome.SUCCESS)
        results = None
        if include_results or outcome is not None:
            results = [r for r in self.results if outcome is None or r.outcome == outcome]
        return JobStatusView(
            job_key=self.job_key,
            status=self.status,
            processed=self.cursor,
            total=self.total,
            progress=self.progress,
            succeeded=succeeded,
            failed=len(self.results) - succeeded,
            last_result=self.last_result,
            results=results,
            pending_control=pending_control,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )


class UpdateEvent(BaseModel):
    """Incremental update pushed to worker observers; payload holds changed fields only."""

    type: UpdateType
    job_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class DeletionItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: str = Field(..., alias="memberId", min_length=1)
    contact_id: Optional[str] = Field(None, alias="contactId")


class SubmitJobRequest(BaseModel):
    items: Optional[List[Any]] = Field(None, description="Ordered work items")
    emails: Optional[str] = Field(None, description="Free-text email list (registration/webhook jobs)")
    delay_seconds: Optional[float] = Field(None, ge=0, le=3600, description="Seconds between two items")
    webhook_url: Optional[str] = Field(None, description="Target URL (webhook jobs)")
    subject: str = Field("", description="Subject sent in webhook payloads")
    content: str = Field("", description="Content sent in webhook payloads")

    def resolve_items(self, job_type: JobType) -> List[Any]:
        """Normalize the submitted items for ``job_type``"""
        if job_type == JobType.DELETION:
            raw = self.items or []
            try:
                items = [DeletionItem.model_validate(i).model_dump() for i in raw]
            except ValueError as e:
                raise InvalidArgumentError(f"Invalid deletion item: {e}")
        else:
            items = [str(i).strip() for i in (self.items or []) if "@" in str(i)]
            if self.emails:
                items.extend(parse_email_list(self.emails))
        if not items:
            raise InvalidArgumentError("No work items supplied.")
        return items

    def resolve_options(self, job_type: JobType) -> Dict[str, Any]:
        if job_type != JobType.WEBHOOK:
            return {}
        if not self.webhook_url:
            raise InvalidArgumentError("Webhook URL is required.")
        return {"webhook_url": self.webhook_url, "subject": self.subject, "content": self.content}


class ControlRequest(BaseModel):
    action: ControlAction


class SubmitJobResponse(BaseModel):
    job_key: str
    status: JobState
    total: int
    message: str


class TickResponse(BaseModel):
    job_key: str
    message: str
    status: JobState
    processed: int
    total: int
    last_result: Optional[ItemResult] = None
