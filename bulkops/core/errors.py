# core/errors.py

"""
Job error taxonomy and API error envelope
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class JobError(Exception):
    """Base class for errors surfaced to submission/control/tick callers."""

    status_code: int = 400
    code: str = "invalid_argument"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidArgumentError(JobError):
    status_code = 400
    code = "invalid_argument"


class JobNotFoundError(JobError):
    status_code = 404
    code = "job_not_found"

    def __init__(self, job_key: str):
        super().__init__(f"Job not found: {job_key}", {"job_key": job_key})
        self.job_key = job_key


class ProjectNotFoundError(JobError):
    status_code = 404
    code = "project_not_found"

    def __init__(self, site_id: str):
        super().__init__(f"Project configuration not found for siteId: {site_id}", {"site_id": site_id})
        self.site_id = site_id


class JobAlreadyActiveError(JobError):
    status_code = 409
    code = "job_already_active"

    def __init__(self, job_key: str, status: str):
        super().__init__(f"Job {job_key} is already {status}", {"job_key": job_key, "status": status})
        self.job_key = job_key


class JobTerminalError(JobError):
    status_code = 409
    code = "job_terminal"

    def __init__(self, job_key: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} job {job_key}: it is already {status}",
            {"job_key": job_key, "status": status, "action": action},
        )
        self.job_key = job_key


class StaleJobRecordError(JobError):
    """Raised when a conditional write loses to a concurrent writer.

    For a tick this means the downstream call for the item has already been
    made but its result was not recorded; the next tick may repeat it.
    """

    status_code = 409
    code = "stale_job_record"

    def __init__(self, job_key: str, message: Optional[str] = None):
        super().__init__(message or f"Job {job_key} was modified concurrently", {"job_key": job_key})
        self.job_key = job_key


def error_response(*, status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    payload: Dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def job_error_handler(_req: Request, exc: JobError) -> JSONResponse:
    logger.info(f"{exc.code}: {exc.message}")
    return error_response(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Pydantic errors may carry non-JSON context objects; keep location and message only.
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": errors},
    )


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error: {exc}", exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
