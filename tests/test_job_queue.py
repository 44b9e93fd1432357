"""
Tests for ProcessingQueue
==========================
Priority ordering, batching, cancellation, failure isolation and shutdown.
"""

import threading
import time

import pytest

from vat_extraction.processing import JobStatus, ProcessingQueue, QueueJob
from vat_extraction.utils.exceptions import InvalidTransitionError, ParseError


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def assert_conserved(queue):
    m = queue.metrics()
    assert m.submitted == m.succeeded + m.failed + m.queued + m.processing


@pytest.fixture
def queues():
    created = []

    def factory(handler, **kwargs):
        kwargs.setdefault("max_wait_time", 0.0)
        queue = ProcessingQueue(handler=handler, **kwargs)
        created.append(queue)
        return queue

    yield factory
    for queue in created:
        queue.shutdown(wait=False)


class TestOrdering:

    def test_higher_priority_runs_first(self, queues):
        seen = []
        queue = queues(seen.append, max_workers=1)
        for priority in (0, 5, 1, 5):
            queue.submit(priority, priority=priority)

        queue.start()
        assert queue.join(timeout=5)

        assert seen == [5, 5, 1, 0]
        assert_conserved(queue)

    def test_full_batch_dispatches_before_wait_time(self, queues):
        queue = queues(lambda payload: payload * 2, max_batch_size=2, max_wait_time=30.0)
        queue.start()

        first = queue.submit(1)
        second = queue.submit(2)

        assert queue.wait_for(first.id, timeout=5).result == 2
        assert queue.wait_for(second.id, timeout=5).result == 4

        third = queue.submit(3)
        time.sleep(0.05)
        assert third.status == JobStatus.QUEUED

        queue.shutdown(wait=True)
        assert third.status == JobStatus.SUCCEEDED
        assert third.result == 6


class TestCancellation:

    def test_cancel_queued_job(self, queues):
        queue = queues(lambda payload: payload)
        job = queue.submit("doc")

        assert queue.cancel(job.id) is True
        assert job.status == JobStatus.FAILED
        assert job.cancelled
        assert job.error == "cancelled"
        assert queue.cancel(job.id) is False

        metrics = queue.metrics()
        assert (metrics.submitted, metrics.failed, metrics.cancelled) == (1, 1, 1)
        assert_conserved(queue)

    def test_running_job_cannot_be_cancelled(self, queues):
        release = threading.Event()
        queue = queues(lambda payload: release.wait(5))
        queue.start()
        job = queue.submit("doc")

        assert wait_until(lambda: job.status == JobStatus.PROCESSING)
        assert queue.cancel(job.id) is False
        assert_conserved(queue)

        release.set()
        assert queue.wait_for(job.id, timeout=5).status == JobStatus.SUCCEEDED

    def test_unknown_job(self, queues):
        queue = queues(lambda payload: payload)

        assert queue.cancel("job_missing") is False
        with pytest.raises(KeyError):
            queue.wait_for("job_missing")


class TestFailureIsolation:

    def test_failing_job_does_not_affect_others(self, queues):
        def handler(payload):
            if payload == "bad":
                raise ParseError("unreadable response", diagnostic="no_content")
            return payload.upper()

        queue = queues(handler, max_workers=2)
        queue.start()
        jobs = [queue.submit(p) for p in ("a", "bad", "c")]
        assert queue.join(timeout=5)

        assert [j.status for j in jobs] == [
            JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SUCCEEDED
        ]
        assert jobs[1].error_category == "PARSE_ERROR"
        assert "unreadable response" in jobs[1].error
        assert jobs[2].result == "C"

        metrics = queue.metrics()
        assert (metrics.succeeded, metrics.failed) == (2, 1)
        assert metrics.average_processing_time_ms >= 0.0
        assert_conserved(queue)

    def test_wait_for_times_out(self, queues):
        release = threading.Event()
        queue = queues(lambda payload: release.wait(5))
        queue.start()
        job = queue.submit("doc")

        with pytest.raises(TimeoutError):
            queue.wait_for(job.id, timeout=0.05)
        release.set()


class TestShutdown:

    def test_shutdown_without_wait_fails_queued_jobs(self, queues):
        queue = queues(lambda payload: payload)
        jobs = [queue.submit(n) for n in range(3)]

        queue.shutdown(wait=False)

        assert all(j.status == JobStatus.FAILED for j in jobs)
        assert all(j.error == "queue shut down" for j in jobs)
        assert_conserved(queue)
        with pytest.raises(RuntimeError):
            queue.submit("late")

    def test_shutdown_with_wait_drains(self, queues):
        queue = queues(lambda payload: payload, max_wait_time=30.0)
        queue.start()
        jobs = [queue.submit(n) for n in range(3)]

        queue.shutdown(wait=True)

        assert [j.result for j in jobs] == [0, 1, 2]
        assert queue.metrics().succeeded == 3


class TestQueueJob:

    def test_terminal_status_is_set_once(self):
        job = QueueJob(id="job_1", payload=None)
        job.mark_processing(0.0)
        job.succeed("ok", 1.0)

        with pytest.raises(InvalidTransitionError):
            job.fail("late failure", 2.0)
        assert job.status == JobStatus.SUCCEEDED
        assert job.processing_time_ms == pytest.approx(1000.0)
        assert job.wait(0)

    def test_to_dict(self):
        job = QueueJob(id="job_1", payload={"secret": "bytes"}, priority=3)

        data = job.to_dict()

        assert data["priority"] == 3
        assert data["status"] == "queued"
        assert "payload" not in data
