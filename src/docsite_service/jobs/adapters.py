import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Iterator

import requests

from .errors import (
    ArtifactNotFound,
    ArtifactUnavailable,
    DelegationError,
    JobNotFound,
    PersistenceError,
    TransientPollError,
)
from .interfaces import (
    ConverterGateway,
    ConverterStatus,
    Failed,
    InProgress,
    JobStore,
    ObjectStoreGateway,
    Queued,
    Succeeded,
)
from .models import Artifact, ArtifactReference, Job, parse_timestamp

logger = logging.getLogger(__name__)

_JOB_ID = re.compile(r"[A-Za-z0-9_-]{1,128}")
CHUNK_SIZE = 64 * 1024


class LocalJobStore(JobStore):
    """One JSON document per job under ``<data_dir>/jobs/<job_id>/job.json``.

    Writes go to a temporary file in the same directory, are fsynced and then
    atomically renamed over the old record, so a concurrent reader sees either
    the previous or the new document and a crash never leaves a torn file.
    """

    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()
        self._lock = threading.Lock()

    @property
    def jobs_dir(self) -> Path:
        return self._base / "jobs"

    def job_dir(self, job_id: str) -> str:
        return str(self.jobs_dir / job_id)

    def put(self, job: Job) -> None:
        payload = json.dumps(job.to_dict(), ensure_ascii=False, indent=2)
        path = Path(self.job_dir(job.id)) / "job.json"
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".job-", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp, path)
                except BaseException:
                    try:
                        os.unlink(tmp)
                    except FileNotFoundError:
                        pass
                    raise
                _fsync_dir(path.parent)
            except OSError as e:
                raise PersistenceError(f"failed to persist job {job.id}: {e}") from e

    def get(self, job_id: str) -> Job:
        if not _JOB_ID.fullmatch(job_id):
            raise JobNotFound(job_id)
        path = Path(self.job_dir(job_id)) / "job.json"
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise JobNotFound(job_id) from None
        except (OSError, ValueError) as e:
            raise PersistenceError(f"failed to read job {job_id}: {e}") from e
        try:
            return Job.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"job {job_id} has a malformed record: {e}") from e

    def list(self) -> list[Job]:
        if not self.jobs_dir.is_dir():
            return []
        jobs = []
        for entry in self.jobs_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                jobs.append(self.get(entry.name))
            except JobNotFound:
                continue
            except PersistenceError:
                logger.warning("Skipping unreadable job record in %s", entry, exc_info=True)
        return jobs


def _fsync_dir(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class InMemoryJobStore(JobStore):
    """Process-local store; records are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, object]] = {}
        self._lock = threading.Lock()

    def put(self, job: Job) -> None:
        record = job.to_dict()
        with self._lock:
            self._records[job.id] = record

    def get(self, job_id: str) -> Job:
        with self._lock:
            record = self._records.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return Job.from_dict(record)

    def list(self) -> list[Job]:
        with self._lock:
            records = list(self._records.values())
        return [Job.from_dict(r) for r in records]


_QUEUED_STATES = {"PENDING", "RECEIVED"}
_RUNNING_STATES = {"STARTED", "RETRY", "PROGRESS"}
_FAILED_STATES = {"FAILURE", "REVOKED"}


class HttpConverterClient(ConverterGateway):
    """requests-based client for the converter's submit/status/download API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def submit(self, job: Job) -> str:
        payload = {
            "site_url": job.url,
            "output_format": job.output_format.wire_name,
            "paths_to_include": list(job.paths_to_include),
            "paths_to_exclude": list(job.paths_to_exclude),
        }
        logger.info("Submitting job %s to converter at %s", job.id, self._base)
        try:
            resp = self._session.post(f"{self._base}/api/convert", json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            raise DelegationError(f"converter unreachable: {e}") from e
        if not resp.ok:
            raise DelegationError(resp.text.strip() or resp.reason or "request rejected", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise DelegationError("converter returned a non-JSON response", status_code=resp.status_code) from e
        task_id = data.get("job_id") if isinstance(data, dict) else None
        if not task_id:
            raise DelegationError("converter response did not include a job_id", status_code=resp.status_code)
        return str(task_id)

    def poll(self, external_task_id: str) -> ConverterStatus:
        url = f"{self._base}/api/job/{external_task_id}/status"
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as e:
            raise TransientPollError(f"status request failed: {e}") from e
        if not resp.ok:
            raise TransientPollError(f"status request failed: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise TransientPollError("status response was not JSON") from e
        if not isinstance(data, dict):
            raise TransientPollError("status response was not an object")
        return _parse_status(external_task_id, data)

    def download(self, external_task_id: str) -> Artifact:
        url = f"{self._base}/api/download/{external_task_id}"
        try:
            resp = self._session.get(url, stream=True, timeout=self._timeout)
        except requests.RequestException as e:
            raise ArtifactUnavailable(f"Failed to download file from backend: {e}") from e
        if not resp.ok:
            detail = _error_detail(resp)
            resp.close()
            raise ArtifactUnavailable(f"Failed to download file from backend: {detail}")
        length = resp.headers.get("Content-Length", "")
        return Artifact(
            chunks=_iter_response(resp),
            media_type=resp.headers.get("Content-Type", ""),
            filename=filename_from_disposition(resp.headers.get("Content-Disposition")),
            content_length=int(length) if length.isdigit() else None,
        )


def _parse_status(task_id: str, data: dict[str, object]) -> ConverterStatus:
    state = str(data.get("state") or "").upper()
    info = data.get("info") if isinstance(data.get("info"), dict) else {}
    if state in _QUEUED_STATES:
        return Queued()
    if state in _RUNNING_STATES:
        return InProgress(
            message=str(info.get("status") or "Converting documentation..."),  # type: ignore[union-attr]
            current_item=info.get("current_url") or None,  # type: ignore[union-attr]
            completed=_as_int(info.get("crawled", info.get("pages_saved"))),  # type: ignore[union-attr]
            total=_as_int(info.get("max_pages")),  # type: ignore[union-attr]
        )
    if state == "SUCCESS":
        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        key = result.get("r2_object_key") or result.get("r2ObjectKey")  # type: ignore[union-attr]
        bucket = result.get("r2_bucket") or result.get("r2Bucket")  # type: ignore[union-attr]
        if key:
            artifact = ArtifactReference(ArtifactReference.OBJECT_STORE, str(key), str(bucket) if bucket else None)
        else:
            artifact = ArtifactReference(ArtifactReference.CONVERTER, task_id)
        expiry = result.get("expiresAt") or result.get("expires_at")  # type: ignore[union-attr]
        return Succeeded(artifact=artifact, expires_at=_parse_expiry(expiry))
    if state in _FAILED_STATES:
        return Failed(reason=str(data.get("error") or "Task failed"))
    raise TransientPollError(f"unrecognised converter state: {state!r}")


def _as_int(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _parse_expiry(value: object):
    if not value:
        return None
    try:
        return parse_timestamp(str(value))
    except ValueError:
        logger.warning("Ignoring unparseable artifact expiry %r", value)
        return None


def _error_detail(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"{resp.status_code} {resp.reason}"
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or data)
    return str(data)


def _iter_response(resp: requests.Response) -> Iterator[bytes]:
    try:
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if chunk:
                yield chunk
    finally:
        resp.close()


def filename_from_disposition(header: str | None) -> str:
    if not header:
        return ""
    match = re.search(r'filename="([^"]+)"', header) or re.search(r"filename=([^;\s]+)", header)
    return match.group(1) if match else ""


class R2ObjectStore(ObjectStoreGateway):
    """Relays artifacts from Cloudflare R2 through its S3-compatible API."""

    def __init__(
        self,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        *,
        default_bucket: str | None = None,
        region_name: str = "auto",
        client=None,
    ) -> None:
        if client is None:
            import boto3

            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region_name,
            )
        self._client = client
        self._default_bucket = default_bucket

    def fetch(self, bucket: str | None, key: str) -> Artifact:
        from botocore.exceptions import BotoCoreError, ClientError

        bucket = bucket or self._default_bucket
        if not bucket:
            raise ArtifactUnavailable("no bucket configured for artifact")
        try:
            obj = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "NotFound", "404"):
                raise ArtifactNotFound("File not found in object storage.") from e
            raise ArtifactUnavailable(f"Failed to download file from object storage: {e}") from e
        except BotoCoreError as e:
            raise ArtifactUnavailable(f"Failed to download file from object storage: {e}") from e
        metadata = obj.get("Metadata") or {}
        return Artifact(
            chunks=_iter_body(obj["Body"]),
            media_type=obj.get("ContentType") or "",
            filename=metadata.get("filename") or key.rsplit("/", 1)[-1],
            content_length=obj.get("ContentLength"),
        )


def _iter_body(body) -> Iterator[bytes]:
    try:
        for chunk in body.iter_chunks(chunk_size=CHUNK_SIZE):
            if chunk:
                yield chunk
    finally:
        body.close()
