import time

import httpx
import pytest

from bulkops.core.errors import JobNotFoundError, StaleJobRecordError
from bulkops.models.job import ControlAction, ItemResult, JobState, JobType, Outcome

SITE_ID = "site-1"
WEBHOOK = {"webhook_url": "https://hooks.test/trigger"}


async def _submit(job_control, items=("a@x.com", "b@x.com"), delay_seconds=0):
    return await job_control.submit(JobType.WEBHOOK, SITE_ID, list(items), delay_seconds, WEBHOOK)


@pytest.mark.anyio
async def test_ticks_advance_one_item_each(job_control, tick_executor, repo, downstream):
    await _submit(job_control)

    first = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert first.message == "Processed 1/2."
    assert (first.status, first.processed) == (JobState.RUNNING, 1)
    assert first.last_result.item == "a@x.com"

    second = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert second.message == "Processed 2/2. Job complete."
    assert second.status == JobState.COMPLETE

    stored = await repo.load(JobType.WEBHOOK, SITE_ID)
    version = stored.version
    third = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert third.message == "Job is already complete."
    assert third.processed == 2
    assert (await repo.load(JobType.WEBHOOK, SITE_ID)).version == version
    assert len(downstream.requests) == 2


@pytest.mark.anyio
async def test_tick_on_unknown_job(tick_executor):
    with pytest.raises(JobNotFoundError):
        await tick_executor.tick(JobType.WEBHOOK, SITE_ID)


@pytest.mark.anyio
async def test_item_failure_is_recorded_and_ticking_continues(job_control, tick_executor, downstream):
    await _submit(job_control)
    downstream.handler = lambda request: httpx.Response(500, text="nope")

    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    assert response.last_result.outcome == Outcome.FAILED
    assert response.status == JobState.RUNNING
    assert response.processed == 1


@pytest.mark.anyio
async def test_paused_job_makes_no_progress(job_control, tick_executor, downstream):
    await _submit(job_control)
    await job_control.pause(JobType.WEBHOOK, SITE_ID)

    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    assert response.message == "Job is paused."
    assert response.processed == 0
    assert downstream.requests == []

    await job_control.resume(JobType.WEBHOOK, SITE_ID)
    assert (await tick_executor.tick(JobType.WEBHOOK, SITE_ID)).processed == 1


@pytest.mark.anyio
async def test_cancel_command_is_applied_before_anything_else(job_control, tick_executor, repo, downstream):
    await _submit(job_control)
    await job_control.pause(JobType.WEBHOOK, SITE_ID)
    await job_control.cancel(JobType.WEBHOOK, SITE_ID)
    assert await repo.get_control(JobType.WEBHOOK, SITE_ID) == ControlAction.CANCEL

    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    assert response.message == "Job canceled."
    assert response.status == JobState.CANCELED
    assert await repo.get_control(JobType.WEBHOOK, SITE_ID) is None
    assert downstream.requests == []

    again = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert again.message == "Job was canceled."
    assert again.processed == 0


@pytest.mark.anyio
async def test_delay_between_items_is_enforced(job_control, tick_executor, downstream):
    await _submit(job_control, delay_seconds=60)

    first = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert first.processed == 1

    waiting = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert waiting.message.startswith("Waiting ")
    assert waiting.processed == 1
    assert len(downstream.requests) == 1


@pytest.mark.anyio
async def test_delay_elapsed_allows_next_item(job_control, tick_executor, repo):
    await _submit(job_control, delay_seconds=5)
    await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    record = await repo.load(JobType.WEBHOOK, SITE_ID)
    record.last_step_at = time.time() - 10
    await repo.save(record, record.version)

    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)
    assert response.status == JobState.COMPLETE


@pytest.mark.anyio
async def test_pause_during_a_step_is_merged(job_control, tick_executor, repo, downstream):
    await _submit(job_control)

    async def pause_then_answer(request):
        await job_control.pause(JobType.WEBHOOK, SITE_ID)
        return httpx.Response(200)

    downstream.handler = pause_then_answer
    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    assert response.processed == 1
    assert response.status == JobState.PAUSED
    stored = await repo.load(JobType.WEBHOOK, SITE_ID)
    assert (stored.status, stored.cursor, len(stored.results)) == (JobState.PAUSED, 1, 1)


@pytest.mark.anyio
async def test_pause_during_final_step_still_completes(job_control, tick_executor, repo, downstream):
    await _submit(job_control, items=("a@x.com",))

    async def pause_then_answer(request):
        await job_control.pause(JobType.WEBHOOK, SITE_ID)
        return httpx.Response(200)

    downstream.handler = pause_then_answer
    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    assert response.status == JobState.COMPLETE
    assert (await repo.load(JobType.WEBHOOK, SITE_ID)).status == JobState.COMPLETE


@pytest.mark.anyio
async def test_overlapping_tick_is_detected(job_control, tick_executor, repo, downstream):
    await _submit(job_control, items=("a@x.com", "b@x.com", "c@x.com"))

    async def concurrent_advance(request):
        other = await repo.load(JobType.WEBHOOK, SITE_ID)
        version = other.version
        other.record_result(ItemResult(item="a@x.com", outcome=Outcome.SUCCESS, detail="other tick"))
        await repo.save(other, version)
        return httpx.Response(200)

    downstream.handler = concurrent_advance
    with pytest.raises(StaleJobRecordError):
        await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    stored = await repo.load(JobType.WEBHOOK, SITE_ID)
    assert stored.cursor == 1
    assert stored.results[0].detail == "other tick"


@pytest.mark.anyio
async def test_failed_write_means_item_is_attempted_again(job_control, tick_executor, store, downstream):
    await _submit(job_control)
    real_cas = store.compare_and_swap
    calls = {"n": 0}

    async def flaky_cas(key, expected, value):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError("store unavailable")
        return await real_cas(key, expected, value)

    store.compare_and_swap = flaky_cas
    with pytest.raises(OSError):
        await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    response = await tick_executor.tick(JobType.WEBHOOK, SITE_ID)

    assert response.processed == 1
    assert [b["email_field"] for b in downstream.bodies()] == ["a@x.com", "a@x.com"]


@pytest.mark.anyio
async def test_status_read_never_advances(job_control, tick_executor, downstream):
    await _submit(job_control)

    for _ in range(3):
        status = await job_control.get_status(JobType.WEBHOOK, SITE_ID)
        assert status.processed == 0

    assert downstream.requests == []
