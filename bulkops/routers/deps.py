# routers/deps.py

"""
Request dependencies - services live on app.state, built by create_app
"""

from fastapi import Request

from bulkops.core.config import Settings
from bulkops.services.job_control import JobControlService
from bulkops.services.tick_executor import TickExecutor
from bulkops.services.worker import JobWorker


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_worker(request: Request) -> JobWorker:
    return request.app.state.worker


def get_job_control(request: Request) -> JobControlService:
    return request.app.state.job_control


def get_tick_executor(request: Request) -> TickExecutor:
    return request.app.state.tick_executor
