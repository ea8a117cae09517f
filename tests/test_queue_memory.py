import pytest

from sitepilot.queue import KEEP_COMPLETED, JobState
from sitepilot.queue.memory import InMemoryJobQueue
from tests.conftest import FakeClock


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue("build", default_attempts=3, default_backoff_ms=1000, clock=clock)


def test_reserve_is_fifo_and_counts_attempts(queue):
    first = queue.add("research", {"project_id": "p1"}, "run-1")
    queue.add("research", {"project_id": "p2"}, "run-2")

    job = queue.reserve()
    assert job.id == first.id
    assert job.state == JobState.ACTIVE
    assert job.attempts_made == 1
    assert job.project_id == "p1"
    assert queue.counts().active == 1
    assert queue.counts().waiting == 1


def test_delayed_job_waits_for_clock(queue, clock):
    queue.add("architecture", {}, "run-1", delay_ms=5000)

    assert queue.reserve() is None
    assert queue.counts().delayed == 1

    clock.advance(5)
    job = queue.reserve()
    assert job is not None
    assert job.name == "architecture"


def test_failed_attempts_back_off_exponentially(queue, clock):
    queue.add("research", {}, "run-1")

    job = queue.reserve()
    assert queue.fail(job, "TransportError: down", retry=True) == JobState.DELAYED
    clock.advance(0.5)
    assert queue.reserve() is None
    clock.advance(0.5)
    job = queue.reserve()
    assert job.attempts_made == 2

    assert queue.fail(job, "TransportError: down", retry=True) == JobState.DELAYED
    clock.advance(1.5)
    assert queue.reserve() is None
    clock.advance(0.5)
    job = queue.reserve()
    assert job.attempts_made == 3

    assert queue.fail(job, "TransportError: down", retry=True) == JobState.FAILED
    failed = queue.failed_jobs()
    assert [j.id for j in failed] == [job.id]
    assert failed[0].failed_reason == "TransportError: down"


def test_non_retryable_failure_is_terminal(queue):
    queue.add("publish", {}, "run-1")
    job = queue.reserve()

    assert queue.fail(job, "PublishRejected: nope", retry=False) == JobState.FAILED
    counts = queue.counts()
    assert counts.failed == 1
    assert counts.delayed == 0


def test_paused_queue_hands_out_nothing(queue):
    queue.add("research", {}, "run-1")
    queue.pause()

    assert queue.is_paused()
    assert queue.reserve() is None
    assert queue.counts().paused

    queue.resume()
    assert queue.reserve() is not None


def test_completed_jobs_are_capped(queue):
    for i in range(KEEP_COMPLETED + 5):
        queue.add("content", {}, f"run-{i}")
        queue.complete(queue.reserve(), {"ok": True})
    assert queue.counts().completed == KEEP_COMPLETED


def test_drain_clean_and_remove(queue):
    queue.add("a", {}, "run-1")
    delayed = queue.add("b", {}, "run-1", delay_ms=1000)
    waiting = queue.add("c", {}, "run-1")

    assert queue.remove(delayed.id)
    assert not queue.remove("missing")
    assert queue.drain(delayed=True) == 2
    assert queue.counts().waiting == 0
    assert not queue.remove(waiting.id)

    queue.add("d", {}, "run-2")
    queue.fail(queue.reserve(), "boom", retry=False)
    assert queue.clean(JobState.FAILED) == 1
    with pytest.raises(ValueError):
        queue.clean(JobState.ACTIVE)


def test_closed_queue_stops_reserving():
    queue = InMemoryJobQueue("monitor", clock=FakeClock())
    queue.add("monitor", {}, "run-1")
    queue.close()
    assert queue.closed
    assert queue.reserve() is None
