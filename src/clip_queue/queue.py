import logging
from typing import Dict, List, Optional

from redis import Redis

from .errors import InvalidTransitionError
from .store import JobStore

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Redis-backed FIFO of job ids with an in-flight list.

    Design rules:
    - Holds IDS, the job state lives in the JobStore
    - Producers LPUSH, consumers take from the right end
    - Guarantees at-least-once delivery; abandoned jobs surface as failed
    """

    def __init__(self, redis_client: Redis, store: JobStore):
        self.redis = redis_client
        self.store = store
        self.keys = store.keys

    # ------------------------------------------------------------------
    # ENQUEUE / DEQUEUE
    # ------------------------------------------------------------------

    def push(self, job_id: str) -> None:
        self.redis.lpush(self.keys.pending, job_id)

    def pop(self) -> Optional[str]:
        """
        Take the oldest pending id.

        LMOVE moves the id into the in-flight list in the same command, so a
        crash right after pop still leaves the claim visible to the sweep.
        """
        job_id = self.redis.lmove(
            self.keys.pending, self.keys.processing, "RIGHT", "LEFT"
        )
        if job_id is None:
            return None
        return self._decode(job_id)

    # ------------------------------------------------------------------
    # ACKNOWLEDGEMENT
    # ------------------------------------------------------------------

    def mark_done(self, job_id: str, count: int = 0) -> None:
        """Drop the in-flight claim. count=0 removes every copy."""
        self.redis.lrem(self.keys.processing, count, job_id)

    def requeue(self, job_id: str) -> None:
        pipe = self.redis.pipeline()
        pipe.lrem(self.keys.processing, 0, job_id)
        pipe.lpush(self.keys.pending, job_id)
        pipe.execute()

    def remove(self, job_id: str) -> None:
        pipe = self.redis.pipeline()
        pipe.lrem(self.keys.pending, 0, job_id)
        pipe.lrem(self.keys.processing, 0, job_id)
        pipe.execute()

    # ------------------------------------------------------------------
    # STALE SWEEP
    # ------------------------------------------------------------------

    def sweep_stale(self, max_age: float) -> int:
        """
        Reclaim in-flight jobs nobody reported on for max_age seconds.

        Stale jobs are forced to failed. Ids whose record expired (in either
        list) are dropped. Returns how many ids were reclaimed.
        """
        now = self.store.clock()
        reclaimed = 0

        for job_id in self.in_flight_ids():
            job = self.store.get(job_id)

            if job is None:
                logger.warning(f"Dropping orphaned in-flight job {job_id}")
                self.mark_done(job_id)
                reclaimed += 1
                continue

            if job.status.is_terminal:
                # Finished but the ack never landed.
                self.mark_done(job_id)
                reclaimed += 1
                continue

            age = now - job.updated_at
            if age <= max_age:
                continue

            try:
                self.store.fail(
                    job_id,
                    f"Job abandoned: no progress for {int(age)}s",
                    kind="stale",
                )
            except InvalidTransitionError as e:
                logger.warning(f"Could not fail stale job {job_id}: {e}")
            self.mark_done(job_id)
            reclaimed += 1
            logger.warning(f"Stale job {job_id} marked failed after {int(age)}s")

        for job_id in self.pending_ids():
            if self.store.get(job_id) is None:
                logger.warning(f"Dropping orphaned pending job {job_id}")
                self.redis.lrem(self.keys.pending, 0, job_id)
                reclaimed += 1

        return reclaimed

    # ------------------------------------------------------------------
    # STATS
    # ------------------------------------------------------------------

    def pending_ids(self) -> List[str]:
        """Pending ids, oldest first."""
        raw = self.redis.lrange(self.keys.pending, 0, -1)
        return [self._decode(v) for v in reversed(raw)]

    def in_flight_ids(self) -> List[str]:
        return [self._decode(v) for v in self.redis.lrange(self.keys.processing, 0, -1)]

    def stats(self) -> Dict[str, int]:
        """Return current queue stats."""
        pipe = self.redis.pipeline()
        pipe.llen(self.keys.pending)
        pipe.llen(self.keys.processing)
        pending, processing = pipe.execute()

        return {
            "pending": pending,
            "processing": processing,
        }

    @staticmethod
    def _decode(value) -> str:
        return value.decode() if isinstance(value, bytes) else str(value)
