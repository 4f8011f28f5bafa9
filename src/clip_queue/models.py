import json
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# A retryable failure goes straight from PROCESSING back to QUEUED.
# FAILED is only ever written once the attempt budget is spent.
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class Job:
    """
    One unit of delegated external work.

    IMPORTANT:
    - payload and result are opaque to the queue
    - result and error are never both set
    - attempts only grows when a worker dequeues the job
    """

    correlation_key: str
    payload: Dict[str, Any]

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    provider: Optional[str] = None

    # External task tracking
    task_id: Optional[str] = None

    # Outcome (mutually exclusive)
    result: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    # Retry / execution tracking
    attempts: int = 0
    last_error: Optional[str] = None
    started_at: Optional[float] = None

    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def field_names(cls) -> set:
        return {f.name for f in fields(cls)}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def to_json(self) -> str:
        """Serialize job to JSON for Redis storage."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        """Deserialize job from Redis JSON."""
        data = json.loads(raw)
        data["status"] = JobStatus(data["status"])
        known = cls.field_names()
        return cls(**{k: v for k, v in data.items() if k in known})
