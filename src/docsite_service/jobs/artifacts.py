import logging
import re
from urllib.parse import urlparse

from .errors import ArtifactUnavailable, JobNotReady
from .interfaces import ConverterGateway, JobStore, ObjectStoreGateway
from .models import Artifact, ArtifactReference, Job, JobStatus, OutputFormat

logger = logging.getLogger(__name__)


def safe_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "_", name).strip("_")


def default_filename(job: Job, fmt: OutputFormat) -> str:
    host = urlparse(job.url).hostname or "site"
    return f"{host}-docs.{fmt.extension}"


class ArtifactService:
    """Resolves a completed job's artifact to a byte stream.

    Objects already uploaded by the converter are relayed from the object store
    when one is configured; otherwise the converter's download endpoint is used.
    """

    def __init__(
        self,
        store: JobStore,
        converter: ConverterGateway,
        object_store: ObjectStoreGateway | None = None,
    ) -> None:
        self._store = store
        self._converter = converter
        self._object_store = object_store

    def fetch(self, job_id: str, output_format: object = None) -> Artifact:
        job = self._store.get(job_id)
        fmt = OutputFormat.parse(output_format) if output_format else job.output_format
        if job.status != JobStatus.COMPLETED or job.artifact is None:
            raise JobNotReady("Job is not completed yet")

        ref = job.artifact
        if ref.source == ArtifactReference.OBJECT_STORE and self._object_store is not None:
            logger.info("Job %s: relaying %s from object storage", job.id, ref.key)
            artifact = self._object_store.fetch(ref.bucket, ref.key)
        elif job.external_task_id:
            logger.info("Job %s: fetching artifact from converter task %s", job.id, job.external_task_id)
            artifact = self._converter.download(job.external_task_id)
        else:
            raise ArtifactUnavailable("no source configured for this artifact")

        filename = safe_filename(artifact.filename) or default_filename(job, fmt)
        return Artifact(
            chunks=artifact.chunks,
            media_type=artifact.media_type or fmt.media_type,
            filename=filename,
            content_length=artifact.content_length,
        )
