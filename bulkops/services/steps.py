# services/steps.py

"""
Step executors - one external side effect per work item

Executors never raise for item-level problems: network errors, timeouts,
non-2xx responses and malformed payloads all come back as a failed
StepOutcome so one bad item cannot abort a batch. ``advance_one_step`` is the
bookkeeping shared by the in-process worker and the tick executor.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from bulkops.core.config import Settings
from bulkops.core.errors import ProjectNotFoundError
from bulkops.models.job import (
    InvalidTransitionError,
    ItemResult,
    JobRecord,
    JobState,
    JobType,
    StepOutcome,
)
from bulkops.services.projects import Project, ProjectRegistry

logger = logging.getLogger(__name__)

REGISTRATION_OK_STATES = {"SUCCESS", "REQUIRE_EMAIL_VERIFICATION"}


@dataclass
class StepContext:
    tenant_key: str
    options: Dict[str, Any] = field(default_factory=dict)
    project: Optional[Project] = None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _auth_headers(project: Project) -> Dict[str, str]:
    return {"Authorization": project.api_key, "wix-site-id": project.site_id}


class StepExecutor:
    """Base executor: subclasses implement ``_execute`` and may raise freely."""

    job_type: JobType
    requires_project = False

    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.settings = settings
        self.base_url = settings.api_base_url.rstrip("/")

    async def execute(self, item: Any, context: StepContext) -> StepOutcome:
        """Run the side effect for one item and report its outcome"""
        if self.requires_project and context.project is None:
            return StepOutcome.failed(f"Project configuration not found for siteId: {context.tenant_key}")

        try:
            return await self._execute(item, context)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.job_type.value} step timed out for {item!r}: {e}")
            return StepOutcome.failed(f"Request timed out: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"{self.job_type.value} step network error for {item!r}: {e}")
            return StepOutcome.failed(f"Network error: {e}")
        except Exception as e:
            logger.error(f"Exception in {self.job_type.value} step for {item!r}: {e}", exc_info=True)
            return StepOutcome.failed(f"Unexpected error: {e}")

    async def _execute(self, item: Any, context: StepContext) -> StepOutcome:
        raise NotImplementedError


class RegistrationStep(StepExecutor):
    job_type = JobType.REGISTRATION
    requires_project = True

    async def _execute(self, item: Any, context: StepContext) -> StepOutcome:
        email = str(item)
        response = await self.client.post(
            f"{self.base_url}/_api/iam/authentication/v2/register",
            json={
                "loginId": {"email": email},
                "password": self.settings.registration_password,
                "captcha_tokens": []
            },
            headers=_auth_headers(context.project)
        )
        data = _response_body(response)
        state = data.get("state") if isinstance(data, dict) else None

        if response.is_success and state in REGISTRATION_OK_STATES:
            if state == "SUCCESS":
                return StepOutcome.success("Member registered instantly.", data)
            return StepOutcome.success("Success (Email verification sent).", data)

        message = data.get("message") if isinstance(data, dict) else None
        return StepOutcome.failed(message or "Registration failed.", data)


class DeletionStep(StepExecutor):
    """Deletes a member, waits, then deletes the member's contact."""

    job_type = JobType.DELETION
    requires_project = True

    def _check_delete(self, response: httpx.Response, entity: str) -> Optional[StepOutcome]:
        if response.status_code == 404:
            return None
        if response.status_code == 429:
            body = _response_body(response)
            reason = body.get("message") if isinstance(body, dict) else None
            return StepOutcome.failed(f"Rate limit hit deleting {entity}: {reason or 'Too Many Requests'}", body)
        if not response.is_success:
            return StepOutcome.failed(
                f"Failed to delete {entity}: {response.text or f'Status {response.status_code}'}",
                _response_body(response)
            )
        return None

    async def _execute(self, item: Any, context: StepContext) -> StepOutcome:
        member_id = item["member_id"]
        contact_id = item.get("contact_id")
        headers = _auth_headers(context.project)
        notes = []

        response = await self.client.delete(f"{self.base_url}/members/v1/members/{member_id}", headers=headers)
        failure = self._check_delete(response, "member")
        if failure:
            return failure
        notes.append("Member already absent." if response.status_code == 404 else "Member deleted.")

        if contact_id:
            await asyncio.sleep(self.settings.dependent_delete_delay_seconds)
            response = await self.client.delete(f"{self.base_url}/contacts/v4/contacts/{contact_id}", headers=headers)
            failure = self._check_delete(response, "contact")
            if failure:
                return StepOutcome.failed(f"{notes[0]} {failure.detail}", failure.response)
            notes.append("Contact already absent." if response.status_code == 404 else "Contact deleted.")

        return StepOutcome.success(" ".join(notes))


def build_webhook_payload(email: str, subject: str, content: str) -> Dict[str, Any]:
    """Test payload covering every field type the webhook trigger accepts"""
    now = datetime.now()
    return {
        "string_field": subject,
        "uuid_field": str(uuid.uuid4()),
        "number_field": 42,
        "dateTime_field": now.isoformat(),
        "date_field": now.date().isoformat(),
        "time_field": now.strftime("%H:%M:%S"),
        "uri_field": "https://www.example.com",
        "boolean_field": True,
        "email_field": email,
        "object_field": {"string_field": content, "number_field": 100},
        "array_field": ["item_1", "item_2"]
    }


class WebhookStep(StepExecutor):
    job_type = JobType.WEBHOOK

    async def _execute(self, item: Any, context: StepContext) -> StepOutcome:
        webhook_url = context.options.get("webhook_url")
        if not webhook_url:
            return StepOutcome.failed("Webhook URL is required.")

        email = str(item)
        payload = build_webhook_payload(email, context.options.get("subject", ""), context.options.get("content", ""))
        response = await self.client.post(webhook_url, json=payload)
        if response.is_success:
            return StepOutcome.success("Sent successfully")
        return StepOutcome.failed(response.text or f"Status {response.status_code}")


def build_step_executors(client: httpx.AsyncClient, settings: Settings) -> Dict[JobType, StepExecutor]:
    return {
        JobType.REGISTRATION: RegistrationStep(client, settings),
        JobType.DELETION: DeletionStep(client, settings),
        JobType.WEBHOOK: WebhookStep(client, settings),
    }


async def advance_one_step(record: JobRecord, executor: StepExecutor, context: StepContext) -> ItemResult:
    """Attempt items[cursor], record exactly one result and complete the job after the last item"""
    if record.is_terminal:
        raise InvalidTransitionError(f"{record.job_key} is {record.status.value}")
    if not record.has_remaining:
        raise InvalidTransitionError(f"{record.job_key} has no unprocessed items")

    item = record.items[record.cursor]
    outcome = await executor.execute(item, context)
    result = ItemResult(item=item, outcome=outcome.outcome, detail=outcome.detail, response=outcome.response)
    record.record_result(result)

    logger.info(f"{record.job_key}: item {record.cursor}/{record.total} {result.outcome.value} - {result.detail}")

    if not record.has_remaining:
        record.transition(JobState.COMPLETE)
        logger.info(f"{record.job_key}: complete")

    return result


class StepRunner:
    """Pairs the executors with tenant credential lookup."""

    def __init__(self, executors: Dict[JobType, StepExecutor], projects: ProjectRegistry):
        self.executors = executors
        self.projects = projects

    async def check_submission(self, job_type: JobType, tenant_key: str) -> None:
        """Reject submissions for tenants that have no credentials"""
        if self.executors[job_type].requires_project:
            await self.projects.resolve(tenant_key)

    async def _context(self, record: JobRecord, executor: StepExecutor) -> StepContext:
        project = None
        if executor.requires_project:
            try:
                project = await self.projects.resolve(record.tenant_key)
            except ProjectNotFoundError:
                project = None
        return StepContext(tenant_key=record.tenant_key, options=record.options, project=project)

    async def advance(self, record: JobRecord) -> ItemResult:
        executor = self.executors[record.job_type]
        context = await self._context(record, executor)
        return await advance_one_step(record, executor, context)
