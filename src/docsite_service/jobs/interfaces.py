from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Union

from .models import Artifact, ArtifactReference, Job


class JobStore(Protocol):
    def put(self, job: Job) -> None:
        """Insert or replace the full record; durable once this returns."""

    def get(self, job_id: str) -> Job:
        ...

    def list(self) -> list[Job]:
        ...


@dataclass(frozen=True)
class Queued:
    pass


@dataclass(frozen=True)
class InProgress:
    message: str
    current_item: str | None = None
    completed: int | None = None
    total: int | None = None


@dataclass(frozen=True)
class Succeeded:
    artifact: ArtifactReference
    expires_at: datetime | None = None


@dataclass(frozen=True)
class Failed:
    reason: str


ConverterStatus = Union[Queued, InProgress, Succeeded, Failed]


class ConverterGateway(Protocol):
    """Blocking client for the external converter; callers offload to threads."""

    def submit(self, job: Job) -> str:
        ...

    def poll(self, external_task_id: str) -> ConverterStatus:
        ...

    def download(self, external_task_id: str) -> Artifact:
        ...


class ObjectStoreGateway(Protocol):
    def fetch(self, bucket: str | None, key: str) -> Artifact:
        ...
