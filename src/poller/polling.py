import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from clip_queue.errors import (
    PollCancelledError,
    PollingError,
    PollTimeoutError,
    RateLimitError,
    TaskFailedError,
    TransientApiError,
)

logger = logging.getLogger(__name__)

PROCESSING = "processing"
READY = "ready"
ERROR = "error"


@dataclass
class TaskStatus:
    """
    Normalized answer from an external status endpoint.

    status is one of "processing", "ready", "error".
    """

    status: str
    output_ref: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (READY, ERROR)


@dataclass(frozen=True)
class PollPolicy:
    """Fixed waits per integration, in seconds."""

    interval: float = 30.0
    error_interval: float = 60.0
    rate_limit_wait: float = 60.0
    max_consecutive_errors: int = 5
    timeout: float = 30 * 60.0


def poll_until_complete(
    check: Callable[[], TaskStatus],
    policy: PollPolicy,
    cancel: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    on_poll: Optional[Callable[[TaskStatus, float], None]] = None,
    label: str = "task",
) -> TaskStatus:
    """
    Call check() until it reports a terminal status.

    Returns the "ready" status. Raises:
        TaskFailedError: the task reported "error" (business failure).
        PollingError: more than max_consecutive_errors transient errors in a row.
        PollTimeoutError: policy.timeout elapsed first.
        PollCancelledError: cancel was set during a wait.

    Non-transient exceptions from check() propagate unchanged.
    """
    cancel = cancel or threading.Event()
    started = clock()
    consecutive_errors = 0
    polls = 0

    while True:
        elapsed = clock() - started
        if elapsed > policy.timeout:
            raise PollTimeoutError(
                f"{label} timed out after {int(elapsed // 60)} minutes"
            )

        try:
            status = check()
        except TransientApiError as e:
            consecutive_errors += 1
            if consecutive_errors > policy.max_consecutive_errors:
                raise PollingError(
                    f"Polling {label} aborted after {consecutive_errors} "
                    f"consecutive errors: {e}"
                ) from e

            if isinstance(e, RateLimitError):
                delay = policy.rate_limit_wait
                logger.warning(f"Rate limited while polling {label}, waiting {delay}s")
            else:
                delay = policy.error_interval
                logger.warning(
                    f"Error polling {label} "
                    f"({consecutive_errors}/{policy.max_consecutive_errors}): {e}"
                )
            _wait(cancel, delay, label)
            continue

        consecutive_errors = 0
        polls += 1

        if on_poll:
            on_poll(status, clock() - started)

        if status.status == READY:
            logger.info(
                f"{label} ready after {polls} polls "
                f"({int((clock() - started) // 60)} minutes)"
            )
            return status

        if status.status == ERROR:
            raise TaskFailedError(f"{label} failed: {status.error or 'Unknown error'}")

        logger.debug(f"{label} still {status.status} (poll {polls})")
        _wait(cancel, policy.interval, label)


def _wait(cancel: threading.Event, delay: float, label: str) -> None:
    if cancel.wait(delay):
        raise PollCancelledError(f"Polling {label} cancelled")
