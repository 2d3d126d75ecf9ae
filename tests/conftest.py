import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from docsite_service.jobs import JobService, StatusNotifier
from docsite_service.jobs.adapters import InMemoryJobStore
from docsite_service.jobs.errors import PersistenceError
from docsite_service.jobs.interfaces import Queued
from docsite_service.jobs.models import Artifact


class FakeConverter:
    """Scripted converter: ``poll`` replays ``statuses`` in order, repeating the last one.

    Exceptions in the script are raised instead of returned.
    """

    def __init__(self, statuses=(), *, task_id="task-1", submit_error=None):
        self.statuses = list(statuses)
        self.task_id = task_id
        self.submit_error = submit_error
        self.submitted = []
        self.polled = []
        self.downloaded = []

    def submit(self, job):
        self.submitted.append(job.id)
        if self.submit_error is not None:
            raise self.submit_error
        return self.task_id

    def poll(self, external_task_id):
        self.polled.append(external_task_id)
        if not self.statuses:
            return Queued()
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def download(self, external_task_id):
        self.downloaded.append(external_task_id)
        return Artifact(chunks=[b"PK\x03\x04", b"rest"], media_type="application/zip", filename="", content_length=8)


class RecordingStore(InMemoryJobStore):
    """In-memory store that keeps every successful write and can fail chosen writes."""

    def __init__(self, fail_writes=()):
        super().__init__()
        self.history = []
        self.fail_writes = set(fail_writes)
        self.write_count = 0

    def put(self, job):
        self.write_count += 1
        if self.write_count in self.fail_writes:
            raise PersistenceError("disk full")
        super().put(job)
        self.history.append(job.to_dict())

    def statuses(self, job_id):
        return [r["status"] for r in self.history if r["id"] == job_id]


class SteppingClock:
    def __init__(self, step_seconds=0.0):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.step = timedelta(seconds=step_seconds)

    def __call__(self):
        self.now = self.now + self.step
        return self.now


async def wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def notifier(store):
    return StatusNotifier(store, refresh_interval=0.05)


@pytest.fixture
def make_service(store, notifier):
    def _make(converter, **kwargs):
        kwargs.setdefault("poll_interval", 0)
        kwargs.setdefault("persist_retry_interval", 0)
        return JobService(store, converter, notifier, **kwargs)

    return _make
