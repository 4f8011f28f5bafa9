from .errors import ClipQueueError, JobNotFoundError, InvalidTransitionError
from .models import Job, JobStatus
from .queue import JobQueue
from .redis_keys import QueueKeys
from .store import JobStore

__all__ = [
    "ClipQueueError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "Job",
    "JobStatus",
    "JobQueue",
    "QueueKeys",
    "JobStore",
]
