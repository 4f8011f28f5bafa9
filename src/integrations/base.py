import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from poller.polling import PollPolicy, TaskStatus

# Called on every poll of a follow-up step, with (status, elapsed seconds)
PollCallback = Callable[[TaskStatus, float], None]


class TaskAdapter(ABC):
    """
    Abstract base class for external job APIs.

    A new vendor only needs an adapter; the orchestrator does the rest.
    """

    name: str = "base"
    poll_policy: PollPolicy = PollPolicy()

    def validate_payload(self, payload: Dict[str, Any]) -> None:
        """
        Reject a payload the API can never accept.

        Raises:
            InvalidPayloadError: a required field is missing or malformed.
        """
        pass

    @abstractmethod
    def create_task(self, payload: Dict[str, Any]) -> str:
        """
        Start the external task.

        Args:
            payload (Dict[str, Any]): The job payload.

        Returns:
            str: The external task id.
        """
        pass

    @abstractmethod
    def get_task_status(self, task_id: str) -> TaskStatus:
        """
        Fetch the current status. Must be safe to call repeatedly.
        """
        pass

    def collect_result(
        self,
        status: TaskStatus,
        payload: Dict[str, Any],
        cancel: Optional[threading.Event] = None,
        on_poll: Optional[PollCallback] = None,
    ) -> Any:
        """
        Turn a ready status into the value stored on the job.

        Adapters that poll again here (exports) must pass cancel and on_poll
        through to poll_until_complete.
        """
        return status.output_ref
