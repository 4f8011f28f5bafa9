from typing import Optional


class ClipQueueError(Exception):
    """Base class for every error raised by clipqueue."""


class ConfigurationError(ClipQueueError):
    """A required setting (API key, URL) is missing."""


class JobNotFoundError(ClipQueueError):
    """The job record does not exist or its TTL expired."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(ClipQueueError):
    """A status change the job lifecycle does not allow."""


# ----------------------------------------------------------------------
# External API errors
# ----------------------------------------------------------------------


class ApiError(ClipQueueError):
    """Error returned by an external job API. Not retried within one poll session."""

    kind = "business"
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ApiError):
    """401 / 403 from the external API."""

    kind = "infrastructure"


class TransientApiError(ApiError):
    """Network failure or 5xx. Safe to retry."""

    kind = "infrastructure"


class RateLimitError(TransientApiError):
    """429 from the external API."""


# ----------------------------------------------------------------------
# Polling outcomes
# ----------------------------------------------------------------------


class JobFailure(ClipQueueError):
    """An attempt at a job ended without a result."""

    kind = "business"
    retryable = True


class InvalidPayloadError(JobFailure, ValueError):
    """The job payload can never be accepted. Not retried."""

    kind = "business"
    retryable = False


class TaskFailedError(JobFailure):
    """The external task itself reported an error."""

    kind = "business"


class PollingError(JobFailure):
    """The status endpoint could not be reached too many times in a row."""

    kind = "infrastructure"


class PollTimeoutError(JobFailure):
    """The task did not reach a terminal state in time."""

    kind = "timeout"


class PollCancelledError(JobFailure):
    """The polling loop was asked to stop."""

    kind = "cancelled"
