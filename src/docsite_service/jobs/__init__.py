"""
Domain layer for documentation-site export jobs.
Provides the job model, gateways to the job store, the external converter and
object storage, the orchestrating service and the status notifier, so the HTTP
front-end stays a thin adapter over the same core logic.
"""

from .artifacts import ArtifactService
from .interfaces import ConverterGateway, JobStore, ObjectStoreGateway
from .models import Job, JobStatus, OutputFormat, StatusEvent
from .notifier import StatusNotifier
from .service import JobService
