import logging
import time
from typing import Any, Callable, Dict, Optional

from redis import Redis

from .config import DEFAULT_JOB_TTL
from .errors import InvalidTransitionError, JobNotFoundError
from .models import ALLOWED_TRANSITIONS, Job, JobStatus
from .redis_keys import QueueKeys

logger = logging.getLogger(__name__)


# Only mark_processing may touch these.
IMMUTABLE_FIELDS = {"id", "attempts", "created_at", "correlation_key"}


class JobStore:
    """
    Redis-backed job records plus a correlation key → job id index.

    Design rules:
    - One JSON document per job, overwritten whole on every write
    - Every write carries a TTL, expired jobs read as missing
    - No multi-key transactions; the queue sweep reconciles
    """

    def __init__(
        self,
        redis_client: Redis,
        keys: Optional[QueueKeys] = None,
        ttl: int = DEFAULT_JOB_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.keys = keys or QueueKeys()
        self.ttl = ttl
        self.clock = clock

    # ------------------------------------------------------------------
    # CREATE / READ
    # ------------------------------------------------------------------

    def create(
        self,
        correlation_key: str,
        payload: Dict[str, Any],
        provider: Optional[str] = None,
    ) -> Job:
        """
        Write a new queued job and point the correlation index at it.

        Any previous index entry for the key is overwritten. Callers must
        not keep two live jobs per key; the older one stays reachable by id
        only.
        """
        now = self.clock()
        job = Job(
            correlation_key=correlation_key,
            payload=payload,
            provider=provider,
            created_at=now,
            updated_at=now,
        )

        self._save(job)
        self.redis.set(self.keys.correlation(correlation_key), job.id, ex=self.ttl)

        logger.info(f"Job {job.id} created for {correlation_key}")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        raw = self.redis.get(self.keys.job(job_id))
        if raw is None:
            return None
        return Job.from_json(raw)

    def get_by_correlation_key(self, key: str) -> Optional[Job]:
        job_id = self.redis.get(self.keys.correlation(key))
        if job_id is None:
            return None
        if isinstance(job_id, bytes):
            job_id = job_id.decode()
        return self.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ------------------------------------------------------------------
    # UPDATE
    # ------------------------------------------------------------------

    def update(self, job_id: str, **changes: Any) -> Job:
        """
        Merge fields into the stored job and refresh updated_at.

        Raises:
            JobNotFoundError: the record is missing or expired.
            InvalidTransitionError: illegal status change, or the job is terminal.
            ValueError: unknown / immutable field, bad progress, result + error,
                result outside completed or error outside failed.
        """
        job = self.require(job_id)
        self._apply(job, changes)
        return self._save(job)

    def complete(self, job_id: str, result: Any) -> Job:
        return self.update(
            job_id, status=JobStatus.COMPLETED, result=result, progress=100
        )

    def fail(self, job_id: str, error: str, kind: str = "business") -> Job:
        return self.update(job_id, status=JobStatus.FAILED, error=error, error_kind=kind)

    def mark_processing(self, job_id: str) -> Job:
        """
        Dequeue transition: the one place attempts is incremented.
        """
        job = self.require(job_id)
        self._check_transition(job, JobStatus.PROCESSING)

        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.progress = 0
        job.started_at = self.clock()
        return self._save(job)

    def delete(self, job_id: str) -> None:
        job = self.get(job_id)
        self.redis.delete(self.keys.job(job_id))
        if job is None:
            return

        index_key = self.keys.correlation(job.correlation_key)
        current = self.redis.get(index_key)
        if isinstance(current, bytes):
            current = current.decode()
        if current == job_id:
            self.redis.delete(index_key)

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _apply(self, job: Job, changes: Dict[str, Any]) -> None:
        unknown = set(changes) - Job.field_names()
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        immutable = set(changes) & IMMUTABLE_FIELDS
        if immutable:
            raise ValueError(f"Job fields cannot be updated: {sorted(immutable)}")

        if changes.get("result") is not None and changes.get("error") is not None:
            raise ValueError("result and error are mutually exclusive")

        if job.status.is_terminal:
            touched = {"status", "result", "error", "error_kind", "progress"} & set(changes)
            if touched:
                raise InvalidTransitionError(
                    f"Job {job.id} is {job.status.value}; cannot change {sorted(touched)}"
                )

        if "status" in changes:
            new_status = JobStatus(changes.pop("status"))
            self._check_transition(job, new_status)
            job.status = new_status

        if changes.get("result") is not None and job.status != JobStatus.COMPLETED:
            raise ValueError(f"Job {job.id}: result is only allowed on a completed job")
        for name in ("error", "error_kind"):
            if changes.get(name) is not None and job.status != JobStatus.FAILED:
                raise ValueError(f"Job {job.id}: {name} is only allowed on a failed job")

        if "progress" in changes:
            progress = int(changes.pop("progress"))
            if not 0 <= progress <= 100:
                raise ValueError(f"progress must be within 0..100, got {progress}")
            if job.status == JobStatus.PROCESSING:
                progress = max(job.progress, progress)
            job.progress = progress

        for name, value in changes.items():
            setattr(job, name, value)

        if changes.get("result") is not None:
            job.error = None
            job.error_kind = None
        if changes.get("error") is not None:
            job.result = None

        if job.status == JobStatus.COMPLETED:
            job.progress = 100

    @staticmethod
    def _check_transition(job: Job, new_status: JobStatus) -> None:
        if new_status == job.status:
            return
        if new_status not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(
                f"Job {job.id}: {job.status.value} → {new_status.value} not allowed"
            )

    def _save(self, job: Job) -> Job:
        job.updated_at = self.clock()
        self.redis.set(self.keys.job(job.id), job.to_json(), ex=self.ttl)
        return job
