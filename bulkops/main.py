# main.py

"""
FastAPI Bulk Operations API - Main Entry Point
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from bulkops.core.config import Settings, settings as default_settings
from bulkops.core.errors import JobError, job_error_handler, unhandled_error_handler, validation_error_handler
from bulkops.core.log_config import configure_logging
from bulkops.routers import job_router, tick_router
from bulkops.services.job_control import JobControlService
from bulkops.services.projects import ProjectRegistry
from bulkops.services.steps import StepRunner, build_step_executors
from bulkops.services.tick_executor import TickExecutor
from bulkops.services.worker import JobWorker
from bulkops.storage.jobs_repo import JobsRepository
from bulkops.storage.kv_store import KeyValueStore, build_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{app.title} {app.version} starting")
    yield
    await app.state.worker.aclose()
    if app.state.owns_http_client:
        await app.state.http_client.aclose()
    logger.info(f"{app.title} stopped")


def create_app(
        settings: Optional[Settings] = None,
        store: Optional[KeyValueStore] = None,
        http_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """Build the app; store and HTTP client can be injected for tests"""
    settings = settings or default_settings
    configure_logging(settings.log_level)

    # Create FastAPI app
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan
    )

    # Services are built eagerly so the app also works without lifespan events.
    store = store or build_store(settings.store_backend, settings.store_dir)
    app.state.owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_seconds))
    runner = StepRunner(build_step_executors(http_client, settings), ProjectRegistry(store))
    repo = JobsRepository(store)

    app.state.settings = settings
    app.state.store = store
    app.state.http_client = http_client
    app.state.worker = JobWorker(runner)
    app.state.job_control = JobControlService(repo, runner)
    app.state.tick_executor = TickExecutor(repo, runner)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(JobError, job_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Include routers
    app.include_router(job_router.router)
    app.include_router(tick_router.router)

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "endpoints": {
                "jobs": "/api/jobs",
                "job_events": "/api/jobs/events",
                "job": "/api/jobs/{job_type}/{site_id}",
                "tick_job": "/api/tick-jobs/{job_type}/{site_id}",
                "tick": "/api/tick-jobs/{job_type}/{site_id}/tick",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": settings.app_version,
            "jobs": len(app.state.worker.get_snapshot(include_results=False))
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bulkops.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=True
    )
