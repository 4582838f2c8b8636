"""Shared fixtures: an in-memory store, a fake downstream API and wired services."""

import json
from typing import Callable, List

import httpx
import pytest

from bulkops.core.config import Settings
from bulkops.services.job_control import JobControlService
from bulkops.services.projects import ProjectRegistry
from bulkops.services.steps import StepRunner, build_step_executors
from bulkops.services.tick_executor import TickExecutor
from bulkops.services.worker import JobWorker
from bulkops.storage.jobs_repo import JobsRepository
from bulkops.storage.kv_store import InMemoryKeyValueStore

SITE_ID = "site-1"
API_KEY = "key-1"
API_BASE = "https://api.test"
WEBHOOK_URL = "https://hooks.test/trigger"


class FakeDownstream:
    """Records every request and answers with ``handler`` (sync or async)."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handler: Callable = self.default_handler

    @staticmethod
    def default_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/register"):
            return httpx.Response(200, json={"state": "SUCCESS"})
        return httpx.Response(200, json={})

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.content]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url=API_BASE,
        default_delay_seconds=0,
        dependent_delete_delay_seconds=0,
        request_timeout_seconds=5,
    )


@pytest.fixture
def downstream() -> FakeDownstream:
    return FakeDownstream()


@pytest.fixture
def http_client(downstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(downstream))


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore({"projects": json.dumps([{"siteId": SITE_ID, "apiKey": API_KEY, "name": "Test"}])})


@pytest.fixture
def runner(http_client, settings, store) -> StepRunner:
    return StepRunner(build_step_executors(http_client, settings), ProjectRegistry(store))


@pytest.fixture
def repo(store) -> JobsRepository:
    return JobsRepository(store)


@pytest.fixture
def worker(runner) -> JobWorker:
    return JobWorker(runner)


@pytest.fixture
def job_control(repo, runner) -> JobControlService:
    return JobControlService(repo, runner)


@pytest.fixture
def tick_executor(repo, runner) -> TickExecutor:
    return TickExecutor(repo, runner)
