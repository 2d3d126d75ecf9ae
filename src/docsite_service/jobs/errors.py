"""Exceptions raised by the job domain layer.

Each error carries a stable ``code`` so the HTTP layer can translate it into a
``{"code": ..., "message": ...}`` detail without inspecting messages.
"""


class JobServiceError(Exception):
    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(JobServiceError, ValueError):
    code = "invalid_input"


class JobNotFound(JobServiceError, LookupError):
    code = "not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__("job not found")
        self.job_id = job_id


class JobNotReady(JobServiceError):
    code = "not_ready"


class InvalidTransition(JobServiceError):
    code = "invalid_transition"


class PersistenceError(JobServiceError):
    code = "persistence_error"


class DelegationError(JobServiceError):
    """The converter rejected the submission or could not be reached."""

    code = "delegation_failed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"API error: {self.status_code} - {self.message}"


class TransientPollError(JobServiceError):
    """A status poll failed in a way that is worth retrying next cycle."""

    code = "upstream_unavailable"


class ArtifactUnavailable(JobServiceError):
    code = "artifact_unavailable"


class ArtifactNotFound(JobServiceError, LookupError):
    code = "artifact_not_found"
