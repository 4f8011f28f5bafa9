from typing import Any, Dict, List, Union

import fakeredis
import pytest

from clip_queue.queue import JobQueue
from clip_queue.store import JobStore
from integrations.base import TaskAdapter
from poller.orchestrator import JobOrchestrator
from poller.polling import ERROR, PROCESSING, READY, PollPolicy, TaskStatus

FAST_POLICY = PollPolicy(
    interval=0, error_interval=0, rate_limit_wait=0, max_consecutive_errors=5, timeout=60
)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAdapter(TaskAdapter):
    """
    Replays a script of statuses / exceptions; the last entry repeats.
    The script restarts for every new task.
    """

    name = "fake"
    poll_policy = FAST_POLICY

    def __init__(self, script: List[Union[TaskStatus, Exception]]):
        self.script = script
        self.created: List[Dict[str, Any]] = []
        self.status_calls = 0
        self._cursor = 0

    def create_task(self, payload: Dict[str, Any]) -> str:
        self.created.append(payload)
        self._cursor = 0
        return f"task-{len(self.created)}"

    def get_task_status(self, task_id: str) -> TaskStatus:
        self.status_calls += 1
        step = self.script[min(self._cursor, len(self.script) - 1)]
        self._cursor += 1
        if isinstance(step, Exception):
            raise step
        return step


def processing() -> TaskStatus:
    return TaskStatus(PROCESSING)


def ready(ref: str) -> TaskStatus:
    return TaskStatus(READY, output_ref=ref)


def failed(reason: str) -> TaskStatus:
    return TaskStatus(ERROR, error=reason)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(redis_client, clock):
    return JobStore(redis_client, clock=clock)


@pytest.fixture
def queue(redis_client, store):
    return JobQueue(redis_client, store)


@pytest.fixture
def make_orchestrator(store, queue):
    def build(script, max_attempts=3):
        adapter = ScriptedAdapter(script)
        orchestrator = JobOrchestrator(store, queue, [adapter], max_attempts=max_attempts)
        return orchestrator, adapter

    return build
