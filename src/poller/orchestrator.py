import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from clip_queue.config import DEFAULT_MAX_ATTEMPTS
from clip_queue.errors import ApiError, InvalidTransitionError, JobFailure, JobNotFoundError
from clip_queue.models import Job, JobStatus
from clip_queue.queue import JobQueue
from clip_queue.store import JobStore
from integrations.base import TaskAdapter

from .polling import TaskStatus, poll_until_complete

logger = logging.getLogger(__name__)

# Progress milestones while a job is processing
PROGRESS_STARTED = 10
PROGRESS_TASK_CREATED = 20
PROGRESS_POLL_CEILING = 90


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


class JobOrchestrator:
    """
    Drives jobs from the queue to a terminal state.

    Responsibilities:
    - Single-flight submission per correlation key
    - Claim: pop from the queue + mark processing
    - Run: create the external task, poll it, write back the outcome
    - Retry budget: requeue until max_attempts dequeues, then fail for good
    """

    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        adapters: Iterable[TaskAdapter],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.queue = queue
        self.adapters: Dict[str, TaskAdapter] = {a.name: a for a in adapters}
        self.max_attempts = max_attempts
        self.clock = clock

    # ------------------------------------------------------------------
    # SUBMIT
    # ------------------------------------------------------------------

    def submit(
        self,
        correlation_key: str,
        payload: Dict[str, Any],
        provider: Optional[str] = None,
    ) -> Job:
        """
        Queue work for a correlation key.

        An active (queued / processing) job for the key is returned as-is.
        A finished one is removed first so the index never orphans a live job.

        Raises:
            ValueError: unknown provider.
            InvalidPayloadError: the provider can never accept the payload.
        """
        provider = self._resolve_provider(provider)
        self.adapters[provider].validate_payload(payload)

        existing = self.store.get_by_correlation_key(correlation_key)
        if existing is not None:
            if not existing.status.is_terminal:
                logger.info(
                    f"Returning active job {existing.id} for {correlation_key}"
                )
                return existing
            logger.info(
                f"Removing {existing.status.value} job {existing.id} for {correlation_key}"
            )
            self.remove(existing.id)

        job = self.store.create(correlation_key, payload, provider=provider)
        self.queue.push(job.id)
        logger.info(f"Job {job.id} queued for {correlation_key} ({provider})")
        return job

    def remove(self, job_id: str) -> None:
        self.queue.remove(job_id)
        self.store.delete(job_id)

    # ------------------------------------------------------------------
    # CLAIM / RUN
    # ------------------------------------------------------------------

    def claim(self) -> Optional[Job]:
        """
        Pop the next job and move it to processing.

        Ids without a record (expired) or in an unexpected state are dropped.
        """
        while True:
            job_id = self.queue.pop()
            if job_id is None:
                return None

            job = self.store.get(job_id)
            if job is None:
                logger.warning(f"Job {job_id} has no record, dropping it")
                self.queue.mark_done(job_id)
                continue

            if job.status != JobStatus.QUEUED:
                logger.warning(
                    f"Job {job_id} popped while {job.status.value}, skipping duplicate entry"
                )
                self.queue.mark_done(job_id, count=1)
                continue

            job = self.store.mark_processing(job_id)
            logger.info(
                f"Claimed job {job.id} for {job.correlation_key} "
                f"(attempt {job.attempts}/{self.max_attempts})"
            )
            return job

    def run(self, job: Job, cancel: Optional[threading.Event] = None) -> JobOutcome:
        """
        Execute one attempt of a claimed job.

        Failures of the attempt are written to the job (requeue or terminal
        failure). Anything unexpected propagates to the caller.
        """
        adapter = self._adapter_for(job)

        try:
            self.store.update(job.id, progress=PROGRESS_STARTED)

            task_id = adapter.create_task(job.payload)
            self.store.update(job.id, task_id=task_id, progress=PROGRESS_TASK_CREATED)
            logger.info(f"Job {job.id}: {adapter.name} task {task_id} created")

            status = poll_until_complete(
                lambda: adapter.get_task_status(task_id),
                adapter.poll_policy,
                cancel=cancel,
                clock=self.clock,
                on_poll=self._progress_reporter(job.id, adapter),
                label=f"{adapter.name} task {task_id}",
            )
            result = adapter.collect_result(
                status,
                job.payload,
                cancel=cancel,
                on_poll=self._heartbeat(job.id),
            )

        except InvalidTransitionError:
            # A progress write found the job already finished by someone else
            return self._already_finished(job.id)
        except (JobFailure, ApiError) as e:
            logger.error(f"Job {job.id} attempt {job.attempts} failed: {e}")
            return self.fail(job.id, str(e), kind=e.kind, retryable=e.retryable)

        return self.complete(job.id, result)

    def process_next(self, cancel: Optional[threading.Event] = None) -> Optional[JobOutcome]:
        job = self.claim()
        if job is None:
            return None
        return self.run(job, cancel=cancel)

    # ------------------------------------------------------------------
    # WRITE BACK
    # ------------------------------------------------------------------

    def complete(self, job_id: str, result: Any) -> JobOutcome:
        """
        Store the result. A job something else already finished (for example
        a sweep) keeps its terminal state; the late result is dropped.
        """
        try:
            self.store.complete(job_id, result)
        except InvalidTransitionError:
            return self._already_finished(job_id)

        self.queue.mark_done(job_id)
        logger.info(f"Job {job_id} completed")
        return JobOutcome.COMPLETED

    def fail(
        self,
        job_id: str,
        error: str,
        kind: str = "business",
        retryable: bool = True,
    ) -> JobOutcome:
        """
        Record a failed attempt.

        Requeues while retryable and attempts < max_attempts, otherwise the
        job becomes permanently failed with error set. A job that is already
        terminal is left as it is.
        """
        job = self.store.get(job_id)
        if job is None:
            self.queue.mark_done(job_id)
            raise JobNotFoundError(job_id)

        if job.status.is_terminal:
            return self._already_finished(job_id)

        if retryable and job.attempts < self.max_attempts:
            self.store.update(job_id, status=JobStatus.QUEUED, last_error=error)
            self.queue.requeue(job_id)
            logger.warning(
                f"Job {job_id} requeued ({job.attempts}/{self.max_attempts}): {error}"
            )
            return JobOutcome.RETRYING

        self.store.fail(job_id, error, kind=kind)
        self.queue.mark_done(job_id)
        logger.error(f"Job {job_id} permanently failed after {job.attempts} attempts: {error}")
        return JobOutcome.FAILED

    # ------------------------------------------------------------------
    # MAINTENANCE
    # ------------------------------------------------------------------

    def sweep(self, max_age: float) -> int:
        reclaimed = self.queue.sweep_stale(max_age)
        if reclaimed:
            logger.info(f"Sweep reclaimed {reclaimed} jobs")
        return reclaimed

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _resolve_provider(self, provider: Optional[str]) -> str:
        if provider is None:
            if len(self.adapters) != 1:
                raise ValueError(
                    f"provider is required, choose one of {sorted(self.adapters)}"
                )
            return next(iter(self.adapters))
        if provider not in self.adapters:
            raise ValueError(f"Unknown provider '{provider}'")
        return provider

    def _already_finished(self, job_id: str) -> JobOutcome:
        job = self.store.require(job_id)
        logger.warning(
            f"Job {job_id} is already {job.status.value}, keeping it: {job.error or 'no error'}"
        )
        self.queue.mark_done(job_id)
        return JobOutcome(job.status.value)

    def _adapter_for(self, job: Job) -> TaskAdapter:
        return self.adapters[self._resolve_provider(job.provider)]

    def _progress_reporter(self, job_id: str, adapter: TaskAdapter):
        timeout = adapter.poll_policy.timeout

        def report(status: TaskStatus, elapsed: float) -> None:
            if status.progress is not None:
                progress = status.progress
            else:
                span = PROGRESS_POLL_CEILING - PROGRESS_TASK_CREATED
                progress = PROGRESS_TASK_CREATED + int(span * min(elapsed / timeout, 1.0))
            progress = min(max(progress, 0), PROGRESS_POLL_CEILING)
            self.store.update(job_id, progress=progress)

        return report

    def _heartbeat(self, job_id: str):
        # Export polls carry no job progress; rewriting the ceiling only
        # refreshes updated_at so the sweep sees the job as alive.
        def beat(status: TaskStatus, elapsed: float) -> None:
            self.store.update(job_id, progress=PROGRESS_POLL_CEILING)

        return beat
