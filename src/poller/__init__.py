from .polling import PollPolicy, TaskStatus, poll_until_complete

__all__ = ["PollPolicy", "TaskStatus", "poll_until_complete"]
