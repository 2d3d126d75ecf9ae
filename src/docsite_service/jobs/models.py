import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable
from urllib.parse import urlparse

from .errors import InvalidInput, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize as ISO-8601 UTC with microseconds so parsing restores the exact instant."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = frozenset({PENDING, PROCESSING})
    TERMINAL = frozenset({COMPLETED, FAILED})


# Allowed forward moves; a job only fails or completes after it started processing.
_TRANSITIONS: dict[str, frozenset[str]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class OutputFormat(str, Enum):
    ARCHIVE = "archive"
    SINGLE_DOCUMENT = "single-document"

    @classmethod
    def parse(cls, value: object) -> "OutputFormat":
        if isinstance(value, cls):
            return value
        fmt = _FORMAT_ALIASES.get(str(value or "").strip().lower())
        if fmt is None:
            raise InvalidInput(f"unsupported output format: {value!r}")
        return fmt

    @property
    def wire_name(self) -> str:
        """Name used by the converter API."""
        return "zip" if self is OutputFormat.ARCHIVE else "single_md"

    @property
    def media_type(self) -> str:
        return "application/zip" if self is OutputFormat.ARCHIVE else "text/markdown"

    @property
    def extension(self) -> str:
        return "zip" if self is OutputFormat.ARCHIVE else "md"


_FORMAT_ALIASES = {
    "archive": OutputFormat.ARCHIVE,
    "zip": OutputFormat.ARCHIVE,
    "single-document": OutputFormat.SINGLE_DOCUMENT,
    "single_document": OutputFormat.SINGLE_DOCUMENT,
    "single_md": OutputFormat.SINGLE_DOCUMENT,
}


@dataclass(frozen=True)
class Progress:
    """Structured progress reported by the converter.

    ``phase`` is the converter's own status line, ``current_item`` the page it is
    working on, ``completed``/``total`` page counts when known.
    """

    phase: str | None = None
    current_item: str | None = None
    completed: int | None = None
    total: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase,
            "current_item": self.current_item,
            "completed": self.completed,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Progress":
        return cls(
            phase=data.get("phase"),  # type: ignore[arg-type]
            current_item=data.get("current_item"),  # type: ignore[arg-type]
            completed=data.get("completed"),  # type: ignore[arg-type]
            total=data.get("total"),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class ArtifactReference:
    source: str  # "object_store" | "converter"
    key: str
    bucket: str | None = None

    OBJECT_STORE = "object_store"
    CONVERTER = "converter"

    def to_dict(self) -> dict[str, object]:
        return {"source": self.source, "key": self.key, "bucket": self.bucket}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ArtifactReference":
        return cls(source=str(data["source"]), key=str(data["key"]), bucket=data.get("bucket"))  # type: ignore[arg-type]


def validate_url(url: object) -> str:
    if not isinstance(url, str) or not url.strip():
        raise InvalidInput("URL is required")
    candidate = url.strip()
    try:
        parsed = urlparse(candidate)
        parsed.port  # raises ValueError when out of range
    except ValueError:
        raise InvalidInput("Invalid URL format")
    if parsed.scheme not in ("http", "https") or not parsed.hostname or " " in candidate:
        raise InvalidInput("Invalid URL format")
    return candidate


def _validate_paths(value: object, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise InvalidInput(f"{name} must be a list of strings")
    paths = []
    for item in value:
        if not isinstance(item, str):
            raise InvalidInput(f"{name} must be a list of strings")
        if item.strip():
            paths.append(item.strip())
    return tuple(paths)


@dataclass
class Job:
    id: str
    url: str
    output_format: OutputFormat
    paths_to_include: tuple[str, ...] = ()
    paths_to_exclude: tuple[str, ...] = ()
    status: str = JobStatus.PENDING
    message: str | None = None
    progress: Progress | None = None
    error: str | None = None
    external_task_id: str | None = None
    artifact: ArtifactReference | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        url: object,
        output_format: object = OutputFormat.ARCHIVE,
        paths_to_include: object = None,
        paths_to_exclude: object = None,
        *,
        now: datetime | None = None,
    ) -> "Job":
        """Validate client input and build a pending job with a fresh id."""
        checked_url = validate_url(url)
        fmt = OutputFormat.parse(output_format)
        include = _validate_paths(paths_to_include, "pathsToInclude")
        exclude = _validate_paths(paths_to_exclude, "pathsToExclude")
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            url=checked_url,
            output_format=fmt,
            paths_to_include=include,
            paths_to_exclude=exclude,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def _touch(self, now: datetime) -> None:
        if now > self.updated_at:
            self.updated_at = now

    def _advance(self, status: str, now: datetime) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"job {self.id}: cannot move from {self.status} to {status}")
        self.status = status
        self._touch(now)

    def start_processing(self, now: datetime, message: str) -> None:
        self._advance(JobStatus.PROCESSING, now)
        self.message = message

    def update(
        self,
        now: datetime,
        *,
        message: str | None = None,
        progress: Progress | None = None,
        external_task_id: str | None = None,
    ) -> bool:
        """Apply in-flight fields to an active job. Returns True if anything changed."""
        if self.is_terminal:
            raise InvalidTransition(f"job {self.id}: {self.status} jobs cannot be updated")
        changed = False
        if message is not None and message != self.message:
            self.message = message
            changed = True
        if progress is not None and progress != self.progress:
            self.progress = progress
            changed = True
        if external_task_id is not None and external_task_id != self.external_task_id:
            self.external_task_id = external_task_id
            changed = True
        if changed:
            self._touch(now)
        return changed

    def complete(
        self,
        artifact: ArtifactReference,
        expires_at: datetime | None,
        now: datetime,
        message: str = "Conversion completed",
    ) -> None:
        self._advance(JobStatus.COMPLETED, now)
        self.artifact = artifact
        self.expires_at = expires_at
        self.message = message
        self.error = None

    def fail(self, reason: str, now: datetime) -> None:
        self._advance(JobStatus.FAILED, now)
        self.error = reason or "Task failed"
        self.artifact = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "url": self.url,
            "output_format": self.output_format.value,
            "paths_to_include": list(self.paths_to_include),
            "paths_to_exclude": list(self.paths_to_exclude),
            "status": self.status,
            "message": self.message,
            "progress": self.progress.to_dict() if self.progress else None,
            "error": self.error,
            "external_task_id": self.external_task_id,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "expires_at": format_timestamp(self.expires_at) if self.expires_at else None,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Job":
        progress = data.get("progress")
        artifact = data.get("artifact")
        expires_at = data.get("expires_at")
        return cls(
            id=str(data["id"]),
            url=str(data["url"]),
            output_format=OutputFormat.parse(data["output_format"]),
            paths_to_include=tuple(data.get("paths_to_include") or ()),  # type: ignore[arg-type]
            paths_to_exclude=tuple(data.get("paths_to_exclude") or ()),  # type: ignore[arg-type]
            status=str(data["status"]),
            message=data.get("message"),  # type: ignore[arg-type]
            progress=Progress.from_dict(progress) if isinstance(progress, dict) else None,
            error=data.get("error"),  # type: ignore[arg-type]
            external_task_id=data.get("external_task_id"),  # type: ignore[arg-type]
            artifact=ArtifactReference.from_dict(artifact) if isinstance(artifact, dict) else None,
            expires_at=parse_timestamp(str(expires_at)) if expires_at else None,
            created_at=parse_timestamp(str(data["created_at"])),
            updated_at=parse_timestamp(str(data["updated_at"])),
        )


@dataclass(frozen=True)
class StatusEvent:
    """One snapshot of a job pushed to a subscriber."""

    job_id: str
    kind: str = "status"  # "status" | "not_found" | "data_lost"
    status: str | None = None
    message: str | None = None
    error: str | None = None
    expires_at: datetime | None = None
    progress: Progress | None = None
    updated_at: datetime | None = None

    STATUS = "status"
    NOT_FOUND = "not_found"
    DATA_LOST = "data_lost"

    @classmethod
    def from_job(cls, job: Job) -> "StatusEvent":
        if job.status == JobStatus.COMPLETED:
            coarse = JobStatus.COMPLETED
        elif job.status == JobStatus.FAILED:
            coarse = JobStatus.FAILED
        else:
            coarse = JobStatus.PROCESSING
        return cls(
            job_id=job.id,
            status=coarse,
            message=job.message or "Processing...",
            error=job.error if coarse == JobStatus.FAILED else None,
            expires_at=job.expires_at if coarse == JobStatus.COMPLETED else None,
            progress=job.progress,
            updated_at=job.updated_at,
        )

    @classmethod
    def not_found(cls, job_id: str) -> "StatusEvent":
        return cls(job_id=job_id, kind=cls.NOT_FOUND, error="Job not found")

    @classmethod
    def data_lost(cls, job_id: str) -> "StatusEvent":
        return cls(job_id=job_id, kind=cls.DATA_LOST, error="Job data lost")

    @property
    def is_final(self) -> bool:
        return self.kind != self.STATUS or self.status in JobStatus.TERMINAL

    def to_dict(self) -> dict[str, object]:
        if self.kind != self.STATUS:
            return {"job_id": self.job_id, "error": self.error}
        body: dict[str, object] = {
            "job_id": self.job_id,
            "status": self.status,
            "message": self.message,
        }
        if self.error is not None:
            body["error"] = self.error
        if self.expires_at is not None:
            body["expiresAt"] = format_timestamp(self.expires_at)
        if self.progress is not None:
            body["progress"] = self.progress.to_dict()
        if self.updated_at is not None:
            body["updatedAt"] = format_timestamp(self.updated_at)
        return body


@dataclass
class Artifact:
    chunks: Iterable[bytes]
    media_type: str
    filename: str
    content_length: int | None = None
