import asyncio
import logging
from datetime import datetime
from typing import Callable

from .errors import DelegationError, InvalidTransition, PersistenceError, TransientPollError
from .interfaces import ConverterGateway, Failed, InProgress, JobStore, Queued, Succeeded
from .models import Job, JobStatus, Progress, utcnow
from .notifier import StatusNotifier

logger = logging.getLogger(__name__)

MSG_STARTING = "Starting conversion process..."
MSG_CRAWLING = "Crawling documentation pages..."
MSG_QUEUED = "Waiting for converter..."
MSG_RESUMED = "Resuming after restart..."

MAX_PERSIST_RETRY_DELAY = 30.0


class JobService:
    """Core domain service driving conversion jobs through their lifecycle.

    ``create`` validates and persists a pending job, then fires a background
    task that delegates to the converter and folds its status into the store
    until the job reaches ``completed`` or ``failed``. Every state change is
    published to the notifier. The service is framework-agnostic; the HTTP layer
    only calls ``create``/``get``/``list`` and the lifecycle hooks.
    """

    def __init__(
        self,
        store: JobStore,
        converter: ConverterGateway,
        notifier: StatusNotifier,
        *,
        poll_interval: float = 2.0,
        max_job_duration: float = 1800.0,
        persist_retry_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._converter = converter
        self._notifier = notifier
        self._poll_interval = poll_interval
        self._max_job_duration = max_job_duration
        self._persist_retry_interval = persist_retry_interval
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}
        self._unsaved: set[str] = set()

    @property
    def store(self) -> JobStore:
        return self._store

    async def start(self) -> None:
        """Pick up jobs left active by a previous process."""
        for job in self._store.list():
            if job.is_terminal or job.id in self._tasks:
                continue
            if job.status == JobStatus.PENDING:
                logger.info("Job %s: re-delegating pending job after restart", job.id)
                self._spawn(job)
            elif job.external_task_id:
                logger.info("Job %s: resuming polling of task %s", job.id, job.external_task_id)
                self._spawn(job, resume=True)
            else:
                logger.warning("Job %s: interrupted before delegation completed", job.id)
                job.fail("Interrupted before the converter accepted the job", self._clock())
                self._save(job)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def create(
        self,
        url: object,
        output_format: object = "archive",
        paths_to_include: object = None,
        paths_to_exclude: object = None,
    ) -> Job:
        """Validate input, persist a pending job and start delegating it in the background.

        Raises InvalidInput without persisting anything when validation fails and
        PersistenceError when the initial record cannot be written. Must be called
        with a running event loop; it never awaits the converter.
        """
        job = Job.new(url, output_format, paths_to_include, paths_to_exclude, now=self._clock())
        self._store.put(job)
        logger.info("Job %s: created for %s (%s)", job.id, job.url, job.output_format.value)
        self._spawn(job)
        return job

    def get(self, job_id: str) -> Job:
        return self._store.get(job_id)

    def list(self) -> list[Job]:
        return self._store.list()

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    def _spawn(self, job: Job, *, resume: bool = False) -> None:
        if job.id in self._tasks:
            raise InvalidTransition(f"job {job.id} is already being delegated")
        task = asyncio.create_task(self._delegate(job, resume=resume), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

    def _write(self, job: Job) -> bool:
        try:
            self._store.put(job)
        except PersistenceError:
            logger.exception("Job %s: failed to persist %s state", job.id, job.status)
            self._unsaved.add(job.id)
            return False
        self._unsaved.discard(job.id)
        return True

    def _save(self, job: Job) -> None:
        # A failed write leaves the job running in memory; every write stores the full record.
        self._write(job)
        self._notifier.publish(job)

    async def _flush(self, job: Job) -> None:
        """Retry the last write until the durable record matches the job's final state."""
        delay = self._persist_retry_interval
        attempt = 0
        while job.id in self._unsaved:
            await asyncio.sleep(delay)
            attempt += 1
            delay = min(delay * 2, MAX_PERSIST_RETRY_DELAY)
            if self._write(job):
                logger.info("Job %s: persisted %s state after %d retries", job.id, job.status, attempt)

    async def _delegate(self, job: Job, *, resume: bool = False) -> None:
        try:
            await self._run(job, resume=resume)
        except asyncio.CancelledError:
            logger.info("Job %s: delegation cancelled in state %s", job.id, job.status)
            raise
        except Exception as e:
            logger.exception("Job %s: unexpected error during delegation", job.id)
            if not job.is_terminal:
                if job.status == JobStatus.PENDING:
                    job.start_processing(self._clock(), MSG_STARTING)
                job.fail(str(e) or "An unexpected error occurred", self._clock())
                self._save(job)
        await self._flush(job)

    async def _run(self, job: Job, *, resume: bool) -> None:
        if not resume:
            job.start_processing(self._clock(), MSG_STARTING)
            self._save(job)
            logger.info("Job %s: starting conversion process", job.id)
            try:
                task_id = await asyncio.to_thread(self._converter.submit, job)
            except DelegationError as e:
                logger.error("Job %s: converter rejected submission: %s", job.id, e)
                job.fail(str(e), self._clock())
                self._save(job)
                return
            job.update(self._clock(), message=MSG_CRAWLING, external_task_id=task_id)
            self._save(job)
            logger.info("Job %s: assigned converter task %s", job.id, task_id)
        else:
            job.update(self._clock(), message=MSG_RESUMED)
            self._save(job)
        await self._poll_until_done(job)

    async def _poll_until_done(self, job: Job) -> None:
        task_id = str(job.external_task_id)
        while True:
            await asyncio.sleep(self._poll_interval)
            elapsed = (self._clock() - job.created_at).total_seconds()
            if elapsed > self._max_job_duration:
                logger.error("Job %s: timed out after %.0f seconds", job.id, elapsed)
                job.fail(f"Timeout: job did not finish within {self._max_job_duration:.0f} seconds", self._clock())
                self._save(job)
                return
            try:
                status = await asyncio.to_thread(self._converter.poll, task_id)
            except TransientPollError as e:
                logger.warning("Job %s: status poll failed, retrying: %s", job.id, e)
                continue

            if isinstance(status, Queued):
                if job.update(self._clock(), message=MSG_QUEUED):
                    self._save(job)
            elif isinstance(status, InProgress):
                progress = Progress(
                    phase=status.message,
                    current_item=status.current_item,
                    completed=status.completed,
                    total=status.total,
                )
                if job.update(self._clock(), message=status.message, progress=progress):
                    self._save(job)
            elif isinstance(status, Succeeded):
                job.complete(status.artifact, status.expires_at, self._clock())
                self._save(job)
                logger.info("Job %s: completed, artifact %s", job.id, status.artifact.key)
                return
            elif isinstance(status, Failed):
                job.fail(status.reason, self._clock())
                self._save(job)
                logger.error("Job %s: converter reported failure: %s", job.id, status.reason)
                return
