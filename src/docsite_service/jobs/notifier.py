import asyncio
import logging
from typing import AsyncGenerator

from .errors import JobNotFound, PersistenceError
from .interfaces import JobStore
from .models import Job, StatusEvent

logger = logging.getLogger(__name__)


class StatusNotifier:
    """Per-job broadcast of status events.

    The orchestrator calls :meth:`publish` on every state change and each
    subscription receives the event on its own queue. A subscription that hears
    nothing for ``refresh_interval`` seconds re-reads the store and emits the
    current state, which keeps idle streams alive and picks up records written
    by another process.
    """

    def __init__(self, store: JobStore, *, refresh_interval: float = 1.0) -> None:
        self._store = store
        self._refresh_interval = refresh_interval
        self._subscribers: dict[str, set[asyncio.Queue[StatusEvent]]] = {}

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def publish(self, job: Job) -> None:
        queues = self._subscribers.get(job.id)
        if not queues:
            return
        event = StatusEvent.from_job(job)
        for queue in queues:
            queue.put_nowait(event)

    async def subscribe(self, job_id: str) -> AsyncGenerator[StatusEvent, None]:
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        # Register before the first read so nothing published in between is lost.
        self._subscribers.setdefault(job_id, set()).add(queue)
        try:
            event = self._read(job_id)
            yield event
            last = event
            while not last.is_final:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self._refresh_interval)
                except asyncio.TimeoutError:
                    event = self._read(job_id)
                    if event.kind == StatusEvent.NOT_FOUND:
                        event = StatusEvent.data_lost(job_id)
                if _is_stale(event, last):
                    continue
                yield event
                last = event
        finally:
            queues = self._subscribers.get(job_id)
            if queues is not None:
                queues.discard(queue)
                if not queues:
                    del self._subscribers[job_id]

    def _read(self, job_id: str) -> StatusEvent:
        try:
            return StatusEvent.from_job(self._store.get(job_id))
        except JobNotFound:
            return StatusEvent.not_found(job_id)
        except PersistenceError:
            logger.exception("Status read failed for job %s", job_id)
            return StatusEvent.data_lost(job_id)


def _is_stale(event: StatusEvent, last: StatusEvent) -> bool:
    if event.updated_at is None or last.updated_at is None:
        return False
    return event.updated_at < last.updated_at
