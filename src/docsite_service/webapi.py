import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from docsite_service import __version__
from docsite_service.jobs import ArtifactService, JobService, StatusNotifier
from docsite_service.jobs.adapters import HttpConverterClient, LocalJobStore, R2ObjectStore
from docsite_service.jobs.errors import (
    ArtifactNotFound,
    ArtifactUnavailable,
    InvalidInput,
    JobNotFound,
    JobNotReady,
    JobServiceError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

# Global configuration defaults
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
CONVERTER_API_URL = os.getenv("CONVERTER_API_URL", "http://localhost:8000")
CONVERTER_TIMEOUT_SEC = float(os.getenv("CONVERTER_TIMEOUT_SEC", "30"))
POLL_INTERVAL_SEC = float(os.getenv("POLL_INTERVAL_SEC", "2"))
STATUS_REFRESH_SEC = float(os.getenv("STATUS_REFRESH_SEC", "1"))
JOB_TIMEOUT_SEC = int(os.getenv("JOB_TIMEOUT_SEC", "1800"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Object storage (Cloudflare R2); artifact relay is disabled unless credentials are set
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_ENDPOINT = os.getenv("R2_ENDPOINT") or (f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com" if R2_ACCOUNT_ID else "")
R2_BUCKET = os.getenv("R2_BUCKET") or None

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Most specific first; the first isinstance match wins.
_HTTP_STATUS = (
    (InvalidInput, status.HTTP_400_BAD_REQUEST),
    (JobNotFound, status.HTTP_404_NOT_FOUND),
    (ArtifactNotFound, status.HTTP_404_NOT_FOUND),
    (JobNotReady, status.HTTP_409_CONFLICT),
    (ArtifactUnavailable, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@dataclass
class Services:
    jobs: JobService
    notifier: StatusNotifier
    artifacts: ArtifactService


def build_services() -> Services:
    """Wire the production adapters from environment configuration."""
    (DATA_DIR / "jobs").mkdir(parents=True, exist_ok=True)
    store = LocalJobStore(str(DATA_DIR))
    converter = HttpConverterClient(CONVERTER_API_URL, timeout=CONVERTER_TIMEOUT_SEC)
    object_store = None
    if R2_ENDPOINT and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY:
        object_store = R2ObjectStore(
            R2_ENDPOINT,
            R2_ACCESS_KEY_ID,
            R2_SECRET_ACCESS_KEY,
            default_bucket=R2_BUCKET,
        )
    else:
        logger.warning("R2 credentials not set; artifacts will be fetched from the converter")
    notifier = StatusNotifier(store, refresh_interval=STATUS_REFRESH_SEC)
    jobs = JobService(
        store,
        converter,
        notifier,
        poll_interval=POLL_INTERVAL_SEC,
        max_job_duration=JOB_TIMEOUT_SEC,
    )
    return Services(jobs=jobs, notifier=notifier, artifacts=ArtifactService(store, converter, object_store))


def _http_error(exc: JobServiceError) -> HTTPException:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for exc_type, http_status in _HTTP_STATUS:
        if isinstance(exc, exc_type):
            code = http_status
            break
    return HTTPException(status_code=code, detail={"code": exc.code, "message": exc.message or str(exc)})


def get_services(request: Request) -> Services:
    return request.app.state.services


class CreateJobRequest(BaseModel):
    # Untyped so the domain layer validates every field and bad input yields the same 400 shape.
    url: Any = None
    outputFormat: Any = "archive"
    pathsToInclude: Any = None
    pathsToExclude: Any = None


router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@router.post("/api/jobs", status_code=status.HTTP_202_ACCEPTED)
async def create_job(body: CreateJobRequest, services: Services = Depends(get_services)) -> JSONResponse:
    """Create a conversion job for a documentation site.

    Returns 202 Accepted with the new job id as soon as the pending record is
    persisted; delegation to the converter continues in the background.
    """
    try:
        job = services.jobs.create(body.url, body.outputFormat, body.pathsToInclude, body.pathsToExclude)
    except JobServiceError as e:
        raise _http_error(e)
    headers = {"Location": f"/api/jobs/{job.id}"}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"jobId": job.id}, headers=headers)


@router.get("/api/jobs")
def list_jobs(services: Services = Depends(get_services)) -> list[dict[str, object]]:
    return [job.to_dict() for job in services.jobs.list()]


@router.get("/api/jobs/{job_id}")
def get_job(job_id: str, services: Services = Depends(get_services)) -> dict[str, object]:
    try:
        return services.jobs.get(job_id).to_dict()
    except JobServiceError as e:
        raise _http_error(e)


@router.get("/api/jobs/{job_id}/events")
async def job_events(job_id: str, services: Services = Depends(get_services)) -> StreamingResponse:
    """Server-sent events with the job's status until it completes or fails."""

    async def stream():
        events = services.notifier.subscribe(job_id)
        try:
            async for event in events:
                yield f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
        finally:
            await events.aclose()

    return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/api/download/{job_id}")
def download(
    job_id: str,
    output_format: str | None = Query(None, alias="format"),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    try:
        artifact = services.artifacts.fetch(job_id, output_format)
    except JobServiceError as e:
        logger.warning("Download for job %s failed: %s", job_id, e)
        raise _http_error(e)
    headers = {"Content-Disposition": f'attachment; filename="{artifact.filename}"'}
    if artifact.content_length is not None:
        headers["Content-Length"] = str(artifact.content_length)
    return StreamingResponse(iter(artifact.chunks), media_type=artifact.media_type, headers=headers)


async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies in the same shape as domain validation errors."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    detail = {"code": InvalidInput.code, "message": message}
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application; without ``services`` the production adapters are wired at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or build_services()
        app.state.services = svc
        await svc.jobs.start()
        try:
            yield
        finally:
            await svc.jobs.stop()

    application = FastAPI(
        title="Documentation Site Export Service",
        version=os.getenv("DOCSITE_SERVICE_VERSION", __version__),
        description=(
            "Accepts documentation-site conversion requests, delegates them to an "
            "external converter and streams job status until the artifact is ready."
        ),
        lifespan=lifespan,
    )
    application.add_exception_handler(RequestValidationError, _invalid_request)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("docsite_service.webapi:app", host=host, port=port, reload=reload, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
