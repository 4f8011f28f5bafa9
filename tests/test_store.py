"""
Tests for the Redis job store.
"""
import random

import pytest

from clip_queue.errors import InvalidTransitionError, JobNotFoundError
from clip_queue.models import Job, JobStatus


class TestCreateAndRead:

    def test_create_is_visible_by_correlation_key(self, store):
        store.create("proj-1", {"url": "http://x"})

        job = store.get_by_correlation_key("proj-1")

        assert job is not None
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
        assert job.payload == {"url": "http://x"}

    def test_missing_job_reads_as_none(self, store):
        assert store.get("nope") is None
        assert store.get_by_correlation_key("nope") is None

    def test_records_carry_ttl(self, store, redis_client):
        job = store.create("proj-1", {})

        assert 0 < redis_client.ttl(store.keys.job(job.id)) <= 86400
        assert 0 < redis_client.ttl(store.keys.correlation("proj-1")) <= 86400

    def test_expired_record_reads_as_missing(self, store, redis_client):
        job = store.create("proj-1", {})
        redis_client.delete(store.keys.job(job.id))

        assert store.get_by_correlation_key("proj-1") is None
        with pytest.raises(JobNotFoundError):
            store.update(job.id, progress=5)

    def test_create_overwrites_index(self, store):
        first = store.create("proj-1", {})
        second = store.create("proj-1", {})

        assert store.get_by_correlation_key("proj-1").id == second.id
        # Older job still reachable by id
        assert store.get(first.id) is not None

    def test_json_round_trip_keeps_status_enum(self):
        job = Job(correlation_key="k", payload={"a": 1})
        restored = Job.from_json(job.to_json())

        assert restored == job
        assert isinstance(restored.status, JobStatus)


class TestUpdate:

    def test_update_refreshes_updated_at(self, store, clock):
        job = store.create("proj-1", {})
        clock.advance(30)

        updated = store.update(job.id, task_id="t-1")

        assert updated.updated_at == job.updated_at + 30
        assert store.get(job.id).task_id == "t-1"

    def test_unknown_and_immutable_fields_rejected(self, store):
        job = store.create("proj-1", {})

        with pytest.raises(ValueError):
            store.update(job.id, colour="blue")
        with pytest.raises(ValueError):
            store.update(job.id, id="other")
        with pytest.raises(ValueError):
            store.update(job.id, attempts=7)

    def test_result_and_error_together_rejected(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)

        with pytest.raises(ValueError):
            store.update(job.id, result="r", error="e")

    def test_progress_range_validated(self, store):
        job = store.create("proj-1", {})

        with pytest.raises(ValueError):
            store.update(job.id, progress=101)
        with pytest.raises(ValueError):
            store.update(job.id, progress=-1)

    def test_progress_never_goes_back_while_processing(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)

        store.update(job.id, progress=40)
        store.update(job.id, progress=20)

        assert store.get(job.id).progress == 40

    def test_complete_pins_progress(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)
        store.update(job.id, progress=30)

        done = store.complete(job.id, "r1")

        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.result == "r1"


class TestTransitions:

    def test_mark_processing_is_the_only_attempt_increment(self, store):
        job = store.create("proj-1", {})

        store.update(job.id, progress=0)
        assert store.get(job.id).attempts == 0

        processing = store.mark_processing(job.id)
        assert processing.attempts == 1
        assert processing.status == JobStatus.PROCESSING
        assert processing.started_at is not None

    def test_queued_cannot_jump_to_completed(self, store):
        job = store.create("proj-1", {})

        with pytest.raises(InvalidTransitionError):
            store.update(job.id, status=JobStatus.COMPLETED)

    @pytest.mark.parametrize(
        "changes",
        [
            {"status": JobStatus.PROCESSING},
            {"status": JobStatus.QUEUED},
            {"status": JobStatus.FAILED},
            {"error": "late failure"},
            {"result": "other"},
            {"progress": 10},
        ],
    )
    def test_completed_is_one_way(self, store, changes):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)
        store.complete(job.id, "r1")

        with pytest.raises(InvalidTransitionError):
            store.update(job.id, **changes)

        assert store.get(job.id).status == JobStatus.COMPLETED
        assert store.get(job.id).result == "r1"

    def test_failed_is_one_way(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)
        store.fail(job.id, "boom")

        with pytest.raises(InvalidTransitionError):
            store.mark_processing(job.id)
        with pytest.raises(InvalidTransitionError):
            store.update(job.id, status=JobStatus.QUEUED)

    def test_non_status_fields_still_update_on_terminal_jobs(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)
        store.complete(job.id, "r1")

        store.update(job.id, task_id="t-9")

        assert store.get(job.id).task_id == "t-9"


class TestResultAndErrorPlacement:

    def test_result_rejected_while_processing(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)

        with pytest.raises(ValueError):
            store.update(job.id, result="r1")

        assert store.get(job.id).result is None

    @pytest.mark.parametrize("changes", [{"error": "e1"}, {"error_kind": "business"}])
    def test_error_rejected_unless_failed(self, store, changes):
        job = store.create("proj-1", {})

        with pytest.raises(ValueError):
            store.update(job.id, **changes)

        store.mark_processing(job.id)
        with pytest.raises(ValueError):
            store.update(job.id, **changes)

        assert store.get(job.id).error is None

    def test_error_rejected_when_requeued(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)

        with pytest.raises(ValueError):
            store.update(job.id, status=JobStatus.QUEUED, error="e1")

        assert store.get(job.id).status == JobStatus.PROCESSING

    def test_error_allowed_together_with_failed_status(self, store):
        job = store.create("proj-1", {})
        store.mark_processing(job.id)

        failed = store.update(job.id, status=JobStatus.FAILED, error="e1", error_kind="timeout")

        assert failed.error == "e1"
        assert failed.error_kind == "timeout"
        assert failed.result is None


def _random_operation(rng):
    name = rng.choice(["mark_processing", "update", "update", "complete", "fail"])
    if name != "update":
        return name, None

    candidates = {
        "status": rng.choice(list(JobStatus)),
        "result": rng.choice([None, "r1", {"clips": []}]),
        "error": rng.choice([None, "e1"]),
        "error_kind": rng.choice([None, "business", "stale"]),
        "progress": rng.randint(0, 100),
        "task_id": f"t-{rng.randint(1, 9)}",
        "last_error": rng.choice([None, "flaky"]),
    }
    picked = rng.sample(sorted(candidates), rng.randint(1, 4))
    return name, {k: candidates[k] for k in picked}


class TestGeneratedSequences:
    """
    Random operation sequences against one job. Rejected operations are
    fine; the stored record must stay consistent after every step.
    """

    @pytest.mark.parametrize("seed", range(60))
    def test_record_stays_consistent(self, store, seed):
        rng = random.Random(seed)
        job = store.create("proj-1", {})
        previous = store.get(job.id)

        for _ in range(rng.randint(1, 12)):
            name, arg = _random_operation(rng)
            try:
                if name == "mark_processing":
                    store.mark_processing(job.id)
                elif name == "complete":
                    store.complete(job.id, "r-final")
                elif name == "fail":
                    store.fail(job.id, "e-final")
                else:
                    store.update(job.id, **arg)
            except (ValueError, InvalidTransitionError):
                pass

            current = store.get(job.id)

            assert current.result is None or current.error is None
            if current.result is not None:
                assert current.status == JobStatus.COMPLETED
            if current.error is not None or current.error_kind is not None:
                assert current.status == JobStatus.FAILED
            assert 0 <= current.progress <= 100
            assert current.attempts >= previous.attempts
            if previous.status.is_terminal:
                assert current.status == previous.status
                assert current.result == previous.result
                assert current.error == previous.error
            if current.status == JobStatus.COMPLETED:
                assert current.progress == 100

            previous = current


class TestDelete:

    def test_delete_clears_index_pointing_at_job(self, store):
        job = store.create("proj-1", {})

        store.delete(job.id)

        assert store.get(job.id) is None
        assert store.get_by_correlation_key("proj-1") is None

    def test_delete_keeps_index_of_newer_job(self, store):
        old = store.create("proj-1", {})
        new = store.create("proj-1", {})

        store.delete(old.id)

        assert store.get_by_correlation_key("proj-1").id == new.id
