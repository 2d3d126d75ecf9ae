import asyncio
import threading
import time

import pytest

from conftest import FakeConverter, RecordingStore, SteppingClock
from docsite_service.jobs import JobService, StatusNotifier
from docsite_service.jobs.errors import DelegationError, InvalidInput, PersistenceError, TransientPollError
from docsite_service.jobs.interfaces import Failed, InProgress, Queued, Succeeded
from docsite_service.jobs.models import ArtifactReference, Job, JobStatus

REF = ArtifactReference(ArtifactReference.OBJECT_STORE, "out/site.zip", "exports")


def _assert_monotonic(statuses):
    ranks = {JobStatus.PENDING: 0, JobStatus.PROCESSING: 1, JobStatus.COMPLETED: 2, JobStatus.FAILED: 2}
    assert [ranks[s] for s in statuses] == sorted(ranks[s] for s in statuses)
    assert sum(1 for s in statuses if s in JobStatus.TERMINAL) <= 1


@pytest.mark.asyncio
async def test_create_returns_before_converter_answers(store, make_service):
    release = threading.Event()

    class SlowConverter(FakeConverter):
        def submit(self, job):
            release.wait(5)
            return super().submit(job)

    service = make_service(SlowConverter([Succeeded(REF)]))
    started = time.monotonic()
    job = service.create("https://docs.example.com")
    assert time.monotonic() - started < 0.5
    assert job.status == JobStatus.PENDING
    assert store.get(job.id).id == job.id

    release.set()
    await service.wait(job.id)
    assert store.get(job.id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_invalid_url_persists_nothing(store, make_service):
    converter = FakeConverter()
    service = make_service(converter)
    with pytest.raises(InvalidInput):
        service.create("not a url")
    assert store.list() == []
    assert converter.submitted == []


@pytest.mark.asyncio
async def test_initial_write_failure_is_surfaced():
    store = RecordingStore(fail_writes={1})
    converter = FakeConverter()
    service = JobService(store, converter, StatusNotifier(store), poll_interval=0)
    with pytest.raises(PersistenceError):
        service.create("https://docs.example.com")
    await asyncio.sleep(0)
    assert converter.submitted == []


@pytest.mark.asyncio
async def test_submit_failure_fails_job(store, make_service):
    converter = FakeConverter(submit_error=DelegationError("site blocked", status_code=400))
    service = make_service(converter)
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    stored = store.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "API error: 400 - site blocked"
    assert stored.artifact is None
    assert store.statuses(job.id) == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED]
    assert all(r["artifact"] is None for r in store.history)
    assert converter.polled == []


@pytest.mark.asyncio
async def test_transient_poll_errors_are_invisible(store, make_service):
    converter = FakeConverter([
        TransientPollError("502"),
        TransientPollError("timeout"),
        Succeeded(REF),
    ])
    service = make_service(converter)
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    stored = store.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.artifact == REF
    assert stored.error is None
    assert stored.external_task_id == "task-1"
    assert len(converter.polled) == 3
    assert all(r["error"] is None for r in store.history)
    assert JobStatus.FAILED not in store.statuses(job.id)
    _assert_monotonic(store.statuses(job.id))


@pytest.mark.asyncio
async def test_progress_is_persisted_only_when_it_changes(store, make_service):
    page = "https://docs.example.com/a"
    converter = FakeConverter([
        Queued(),
        InProgress("Crawling", page, 1, 5),
        InProgress("Crawling", page, 1, 5),
        InProgress("Crawling", page, 1, 5),
        InProgress("Converting HTML to Markdown...", None, 3, None),
        Succeeded(REF),
    ])
    service = make_service(converter)
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    messages = [r["message"] for r in store.history if r["id"] == job.id]
    assert messages.count("Crawling") == 1
    assert messages == [
        None,
        "Starting conversion process...",
        "Crawling documentation pages...",
        "Waiting for converter...",
        "Crawling",
        "Converting HTML to Markdown...",
        "Conversion completed",
    ]
    crawling = next(r for r in store.history if r["message"] == "Crawling")
    assert crawling["progress"] == {"phase": "Crawling", "current_item": page, "completed": 1, "total": 5}


@pytest.mark.asyncio
async def test_upstream_failure_fails_job(store, make_service):
    service = make_service(FakeConverter([InProgress("Crawling"), Failed("robots.txt disallows crawling")]))
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    stored = store.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "robots.txt disallows crawling"
    assert stored.artifact is None


@pytest.mark.asyncio
async def test_polling_gives_up_after_deadline(store, make_service):
    converter = FakeConverter([InProgress("Crawling")])
    service = make_service(converter, max_job_duration=10, clock=SteppingClock(step_seconds=3))
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    stored = store.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error.startswith("Timeout")


@pytest.mark.asyncio
async def test_persistence_failure_does_not_stop_the_job():
    # Write 1 is the pending record, write 2 the processing transition.
    store = RecordingStore(fail_writes={2})
    service = JobService(store, FakeConverter([Succeeded(REF)]), StatusNotifier(store), poll_interval=0)
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    assert store.get(job.id).status == JobStatus.COMPLETED
    assert store.statuses(job.id)[0] == JobStatus.PENDING
    assert store.statuses(job.id)[-1] == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_terminal_write_is_retried():
    # Writes: 1 pending, 2 processing, 3 task id, 4 and 5 the completed record.
    store = RecordingStore(fail_writes={4, 5})
    service = JobService(
        store,
        FakeConverter([Succeeded(REF)]),
        StatusNotifier(store),
        poll_interval=0,
        persist_retry_interval=0,
    )
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    stored = store.get(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.artifact == REF
    assert store.write_count == 6
    assert store.statuses(job.id) == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PROCESSING, JobStatus.COMPLETED]


@pytest.mark.asyncio
async def test_failed_write_of_a_failure_is_retried():
    store = RecordingStore(fail_writes={3})
    converter = FakeConverter(submit_error=DelegationError("site blocked", status_code=400))
    service = JobService(store, converter, StatusNotifier(store), poll_interval=0, persist_retry_interval=0)
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    assert store.get(job.id).status == JobStatus.FAILED
    assert store.get(job.id).error == "API error: 400 - site blocked"


@pytest.mark.asyncio
async def test_stop_cancels_pending_write_retries():
    store = RecordingStore(fail_writes=set(range(4, 1000)))
    service = JobService(
        store,
        FakeConverter([Succeeded(REF)]),
        StatusNotifier(store),
        poll_interval=0,
        persist_retry_interval=0.01,
    )
    job = service.create("https://docs.example.com")
    await asyncio.sleep(0.05)
    await service.stop()

    assert store.get(job.id).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_unexpected_converter_error_fails_job(store, make_service):
    service = make_service(FakeConverter([RuntimeError("bad payload shape")]))
    job = service.create("https://docs.example.com")
    await service.wait(job.id)

    stored = store.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "bad payload shape"


@pytest.mark.asyncio
async def test_identical_requests_create_distinct_jobs(store, make_service):
    service = make_service(FakeConverter([Succeeded(REF)]))
    first = service.create("https://docs.example.com", "zip")
    second = service.create("https://docs.example.com", "zip")
    assert first.id != second.id
    await service.wait(first.id)
    await service.wait(second.id)
    assert {j.id for j in service.list()} == {first.id, second.id}
    assert all(j.status == JobStatus.COMPLETED for j in service.list())


@pytest.mark.asyncio
async def test_start_recovers_jobs_left_active(store, make_service):
    pending = Job.new("https://docs.example.com/pending")
    store.put(pending)

    resumable = Job.new("https://docs.example.com/resume")
    resumable.start_processing(resumable.created_at, "Crawling documentation pages...")
    resumable.update(resumable.created_at, external_task_id="task-resume")
    store.put(resumable)

    orphan = Job.new("https://docs.example.com/orphan")
    orphan.start_processing(orphan.created_at, "Starting conversion process...")
    store.put(orphan)

    done = Job.new("https://docs.example.com/done")
    done.start_processing(done.created_at, "Starting conversion process...")
    done.fail("earlier failure", done.created_at)
    store.put(done)

    converter = FakeConverter([Succeeded(REF)])
    service = make_service(converter)
    await service.start()
    await service.wait(pending.id)
    await service.wait(resumable.id)

    assert store.get(pending.id).status == JobStatus.COMPLETED
    assert store.get(resumable.id).status == JobStatus.COMPLETED
    assert converter.submitted == [pending.id]
    assert "task-resume" in converter.polled
    assert store.get(orphan.id).status == JobStatus.FAILED
    assert store.get(done.id).error == "earlier failure"


@pytest.mark.asyncio
async def test_stop_cancels_without_failing_jobs(store, make_service):
    service = make_service(FakeConverter([InProgress("Crawling")]), poll_interval=0.01)
    job = service.create("https://docs.example.com")
    await asyncio.sleep(0.05)
    await service.stop()

    stored = store.get(job.id)
    assert stored.status == JobStatus.PROCESSING
    assert stored.error is None


@pytest.mark.asyncio
async def test_state_changes_are_published(store, notifier, make_service):
    service = make_service(FakeConverter([InProgress("Crawling"), Succeeded(REF)]))
    job = service.create("https://docs.example.com")
    events = [e async for e in notifier.subscribe(job.id)]
    await service.wait(job.id)

    assert events[-1].status == JobStatus.COMPLETED
    assert [e.status for e in events[:-1]] == [JobStatus.PROCESSING] * (len(events) - 1)
