import asyncio

import httpx
import pytest

from bulkops.core.errors import JobAlreadyActiveError, JobNotFoundError, JobTerminalError, ProjectNotFoundError
from bulkops.models.job import JobState, JobType, Outcome, UpdateType

SITE_ID = "site-1"
WEBHOOK = {"webhook_url": "https://hooks.test/trigger"}
EMAILS = ["a@x.com", "b@x.com", "c@x.com"]


@pytest.mark.anyio
async def test_job_runs_every_item_in_order(worker, downstream):
    record = await worker.submit(JobType.REGISTRATION, SITE_ID, EMAILS)

    await worker.wait(record.job_key)

    status = worker.get_status(record.job_key, include_results=True)
    assert status.status == JobState.COMPLETE
    assert (status.processed, status.total, status.progress) == (3, 3, 100.0)
    assert [r.item for r in status.results] == EMAILS
    assert all(r.outcome == Outcome.SUCCESS for r in status.results)
    assert [b["loginId"]["email"] for b in downstream.bodies()] == EMAILS


@pytest.mark.anyio
async def test_failed_item_still_advances(worker, downstream):
    downstream.handler = lambda request: httpx.Response(500, text="down")
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:2], options=WEBHOOK)

    await worker.wait(record.job_key)

    assert record.status == JobState.COMPLETE
    assert [r.outcome for r in record.results] == [Outcome.FAILED, Outcome.FAILED]
    assert record.results[0].detail == "down"


@pytest.mark.anyio
async def test_duplicate_submission_is_rejected(worker):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, options=WEBHOOK)

    with pytest.raises(JobAlreadyActiveError):
        await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, options=WEBHOOK)

    await worker.wait(record.job_key)
    again = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:1], options=WEBHOOK)
    await worker.wait(again.job_key)
    assert worker.get_status(again.job_key).total == 1


@pytest.mark.anyio
async def test_unknown_project_is_rejected_before_starting(worker, downstream):
    with pytest.raises(ProjectNotFoundError):
        await worker.submit(JobType.REGISTRATION, "other-site", EMAILS)
    assert worker.get_snapshot() == {}
    assert downstream.requests == []


@pytest.mark.anyio
async def test_pause_before_first_item_holds_the_cursor(worker, downstream):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, options=WEBHOOK)
    worker.pause(record.job_key)

    for _ in range(5):
        await asyncio.sleep(0)
    assert record.status == JobState.PAUSED
    assert record.cursor == 0
    assert downstream.requests == []

    worker.resume(record.job_key)
    await worker.wait(record.job_key)

    assert record.status == JobState.COMPLETE
    assert [r.item for r in record.results] == EMAILS
    assert [b["email_field"] for b in downstream.bodies()] == EMAILS


@pytest.mark.anyio
async def test_pause_and_resume_are_idempotent(worker):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, options=WEBHOOK)
    worker.pause(record.job_key)
    worker.pause(record.job_key)
    assert record.status == JobState.PAUSED

    worker.resume(record.job_key)
    worker.resume(record.job_key)
    await worker.wait(record.job_key)
    assert record.status == JobState.COMPLETE


@pytest.mark.anyio
async def test_cancel_stops_before_remaining_items(worker, downstream):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, options=WEBHOOK)
    worker.cancel(record.job_key)

    await worker.wait(record.job_key)

    assert record.status == JobState.CANCELED
    assert record.cursor < record.total
    assert len(record.results) == record.cursor
    assert len(downstream.requests) == record.cursor


@pytest.mark.anyio
async def test_cancel_interrupts_a_paused_job(worker):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, options=WEBHOOK)
    worker.pause(record.job_key)
    worker.cancel(record.job_key)

    await worker.wait(record.job_key)

    assert record.status == JobState.CANCELED
    assert record.cursor == 0


@pytest.mark.anyio
async def test_commands_on_finished_jobs(worker):
    with pytest.raises(JobNotFoundError):
        worker.pause("webhook_job_nobody")

    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:1], options=WEBHOOK)
    await worker.wait(record.job_key)

    with pytest.raises(JobTerminalError):
        worker.pause(record.job_key)
    with pytest.raises(JobTerminalError):
        worker.cancel(record.job_key)
    assert record.status == JobState.COMPLETE


@pytest.mark.anyio
async def test_observers_receive_started_progress_and_done(worker):
    first, second = [], []
    worker.subscribe(first.append)
    worker.subscribe(second.append)

    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:2], options=WEBHOOK)
    await worker.wait(record.job_key)

    types = [e.type for e in first]
    assert types[0] == UpdateType.STARTED
    assert types.count(UpdateType.PROGRESS) == 2
    assert types[-1] == UpdateType.DONE
    assert [e.type for e in second] == types
    assert first[-1].payload["status"] == "complete"
    assert first[1].payload["result"]["item"] == "a@x.com"


@pytest.mark.anyio
async def test_unsubscribe_handle_stops_delivery(worker):
    events = []
    unsubscribe = worker.subscribe(events.append)
    assert unsubscribe() is True
    assert unsubscribe() is False

    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:1], options=WEBHOOK)
    await worker.wait(record.job_key)
    assert events == []


@pytest.mark.anyio
async def test_failing_observer_does_not_break_the_job(worker):
    events = []

    def broken(event):
        raise RuntimeError("observer bug")

    worker.subscribe(broken)
    worker.subscribe(events.append)

    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:2], options=WEBHOOK)
    await worker.wait(record.job_key)

    assert record.status == JobState.COMPLETE
    assert events[-1].type == UpdateType.DONE


@pytest.mark.anyio
async def test_countdown_between_items(worker):
    events = []
    worker.subscribe(events.append)

    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:2], delay_seconds=1, options=WEBHOOK)
    await worker.wait(record.job_key)

    countdowns = [e.payload["countdown"] for e in events if e.type == UpdateType.COUNTDOWN]
    assert countdowns == [1, 0]
    assert [e.model_dump(mode="json")["type"] for e in events].count("countdown-tick") == 2
    assert record.status == JobState.COMPLETE


@pytest.mark.anyio
async def test_pause_during_countdown_waits_for_resume(worker, downstream):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS[:2], delay_seconds=30, options=WEBHOOK)

    while record.cursor == 0:
        await asyncio.sleep(0.01)
    worker.pause(record.job_key)
    await asyncio.sleep(0.05)
    assert record.cursor == 1

    record.delay_seconds = 0
    worker.resume(record.job_key)
    await asyncio.wait_for(worker.wait(record.job_key), timeout=5)

    assert record.status == JobState.COMPLETE
    assert len(downstream.requests) == 2


@pytest.mark.anyio
async def test_snapshot_and_reset(worker):
    assert worker.get_status("webhook_job_site-1").status == JobState.IDLE

    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, delay_seconds=30, options=WEBHOOK)
    snapshot = worker.get_snapshot()
    assert list(snapshot) == [record.job_key]
    assert snapshot[record.job_key].total == 3

    await worker.reset(record.job_key)
    assert record.status == JobState.CANCELED
    assert worker.get_snapshot() == {}
    assert worker.get_status(record.job_key).status == JobState.IDLE

    await worker.reset(record.job_key)


@pytest.mark.anyio
async def test_aclose_stops_running_jobs(worker):
    record = await worker.submit(JobType.WEBHOOK, SITE_ID, EMAILS, delay_seconds=30, options=WEBHOOK)

    await worker.aclose()

    assert record.status == JobState.CANCELED
    assert record.cursor < record.total


@pytest.mark.anyio
async def test_unexpected_loop_error_fails_the_job(worker, store, downstream):
    events = []
    worker.subscribe(events.append)
    record = await worker.submit(JobType.REGISTRATION, SITE_ID, EMAILS)
    await store.put("projects", "{not json")

    await worker.wait(record.job_key)

    assert record.status == JobState.FAILED
    assert record.error
    assert record.cursor == 0
    assert worker.get_status(record.job_key).error == record.error
    assert events[-1].type == UpdateType.DONE
    assert events[-1].payload["status"] == "failed"
    assert downstream.requests == []
