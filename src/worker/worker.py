import logging
import signal
import threading
import time
from typing import Optional

from clip_queue.config import DEFAULT_STALE_AFTER, DEFAULT_SWEEP_INTERVAL
from clip_queue.errors import JobNotFoundError
from poller.orchestrator import JobOrchestrator, JobOutcome

logger = logging.getLogger(__name__)


class Worker:
    """
    Redis-backed job worker.

    Responsibilities:
    - Claim jobs through the orchestrator and run them
    - Sweep stale in-flight jobs on a fixed interval
    - Stop gracefully on SIGINT / SIGTERM, cancelling any poll in progress
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        poll_interval: float = 1.0,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the Worker.

        Args:
            orchestrator (JobOrchestrator): Claims, runs and writes back jobs.
            poll_interval (float): Sleep duration when the queue is empty.
            sweep_interval (float): Seconds between stale sweeps.
            stale_after (float): In-flight jobs idle this long are failed.
            install_signal_handlers (bool): Hook SIGINT / SIGTERM. Must be
                False when the worker is not created on the main thread.
        """
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.stale_after = stale_after
        self._stop = threading.Event()
        self._last_sweep: Optional[float] = None

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Signal {signum} received. Stopping worker gracefully...")
        self.stop()

    def start(self, timeout: Optional[float] = None, max_jobs: Optional[int] = None) -> int:
        """
        Run the worker loop.

        Args:
            timeout (Optional[float]): Max duration to run the worker (seconds). None = infinite.
            max_jobs (Optional[int]): Stop after this many jobs. None = unlimited.

        Returns:
            int: Number of jobs processed.
        """
        self._stop.clear()
        start_time = time.monotonic()
        processed = 0
        logger.info("Worker started. Polling queue...")

        while not self._stop.is_set():
            if timeout and (time.monotonic() - start_time > timeout):
                logger.info("Worker timeout reached. Stopping.")
                break

            if max_jobs is not None and processed >= max_jobs:
                break

            try:
                self._maybe_sweep()

                outcome = self.run_once()
                if outcome is None:
                    # Queue empty
                    self._stop.wait(self.poll_interval)
                else:
                    processed += 1

            except Exception as e:
                logger.error(f"Unexpected error in worker loop: {e}", exc_info=True)
                self._stop.wait(1)

        logger.info(f"Worker stopped after {processed} jobs.")
        return processed

    def stop(self) -> None:
        """
        Request a graceful stop. A job being polled is cancelled and requeued.
        """
        logger.info("Stopping worker...")
        self._stop.set()

    def run_once(self) -> Optional[JobOutcome]:
        """
        Claim and run a single job. Returns None when the queue is empty.
        """
        job = self.orchestrator.claim()
        if job is None:
            return None

        logger.info(f"Starting job {job.id}")

        try:
            outcome = self.orchestrator.run(job, cancel=self._stop)
        except JobNotFoundError:
            logger.error(f"Job {job.id} record expired while running")
            self.orchestrator.queue.mark_done(job.id)
            return JobOutcome.FAILED
        except Exception as e:
            logger.error(f"Job {job.id} crashed: {e}", exc_info=True)
            return self.orchestrator.fail(job.id, str(e), kind="internal")

        logger.info(f"Job {job.id} {outcome.value}")
        return outcome

    def _maybe_sweep(self) -> None:
        now = time.monotonic()
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        self.orchestrator.sweep(self.stale_after)
