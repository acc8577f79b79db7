import asyncio
from datetime import timedelta

import pytest

from storyq import JobQueue, HandlerTimeout
from .fixtures import queue


@pytest.mark.asyncio
async def test_retry_until_success(queue: JobQueue):
    starts = []

    async def flaky(payload, job):
        starts.append(job.started_at)
        if len(starts) < 3:
            raise RuntimeError(f"failure {len(starts)}")
        return "ok"

    queue.register_handler("flaky", flaky)
    job = queue.enqueue("flaky")
    await queue.join()

    assert job.status == queue.COMPLETED
    assert job.result == "ok"
    assert job.attempts == 3
    assert len(starts) == 3
    # backoff_base is 10 ms: 20 ms before the 2nd attempt, 40 ms before the 3rd
    assert starts[1] - starts[0] >= timedelta(milliseconds=20)
    assert starts[2] - starts[1] >= timedelta(milliseconds=40)
    assert job.delay == 40


@pytest.mark.asyncio
async def test_job_waits_between_attempts(queue: JobQueue):
    failed_once = asyncio.Event()

    async def fail_once(payload, job):
        if not failed_once.is_set():
            failed_once.set()
            raise RuntimeError("Something went wrong")

    queue.register_handler("fail_once", fail_once)
    job = queue.enqueue("fail_once")
    await failed_once.wait()
    await asyncio.sleep(0)

    assert job.status == queue.WAITING
    assert job.attempts == 1
    assert job.error == "Something went wrong"
    assert "RuntimeError" in job.error_trace
    assert job.ready_at > job.started_at

    await queue.join()
    assert job.status == queue.COMPLETED
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_job_fails_after_max_attempts(queue: JobQueue):
    calls = 0

    async def always_fail(payload, job):
        nonlocal calls
        calls += 1
        raise ValueError("boom")

    queue.register_handler("always_fail", always_fail)
    job = queue.enqueue("always_fail")
    await queue.join()

    assert job.status == queue.FAILED
    assert job.attempts == job.max_attempts == 3
    assert job.error == "boom"
    assert "ValueError: boom" in job.error_trace
    assert job.failed_at is not None
    assert job.completed_at is None
    assert queue.get_stats().failed == 1

    # No further attempts after the terminal failure
    await asyncio.sleep(0.1)
    assert calls == 3


@pytest.mark.asyncio
async def test_single_attempt(queue: JobQueue):
    async def explode(payload, job):
        raise RuntimeError("boom")

    queue.register_handler("explode", explode)
    job = queue.enqueue("explode", max_attempts=1)
    await queue.join()

    assert job.status == queue.FAILED
    assert job.attempts == 1
    assert job.delay == 0
    assert job.error == "boom"


@pytest.mark.asyncio
async def test_queue_default_max_attempts():
    queue = JobQueue("few", backoff_base=1, max_attempts=2)

    async def explode(payload, job):
        raise RuntimeError("boom")

    queue.register_handler("explode", explode)
    job = queue.enqueue("explode")
    await queue.join()
    await queue.close()

    assert job.max_attempts == 2
    assert job.attempts == 2
    assert job.status == queue.FAILED


@pytest.mark.asyncio
async def test_missing_handler_fails_immediately(queue: JobQueue):
    job = queue.enqueue("unknown")
    await queue.join()

    assert job.status == queue.FAILED
    assert job.attempts == 1
    assert job.delay == 0
    assert job.error == "No handler registered for job type: unknown"


@pytest.mark.asyncio
async def test_failing_job_releases_slot(queue: JobQueue):
    async def explode(payload, job):
        raise RuntimeError("boom")

    queue.register_handler("explode", explode)
    queue.register_handler("ok", lambda payload, job: "ok")

    failing = queue.enqueue("explode", max_attempts=1, priority=1)
    passing = queue.enqueue("ok")
    await queue.join()

    assert failing.status == queue.FAILED
    assert passing.status == queue.COMPLETED


@pytest.mark.asyncio
async def test_timeout_is_retried(queue: JobQueue):
    calls = 0

    async def slow_then_fast(payload, job):
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(1)
        return calls

    queue.register_handler("slow", slow_then_fast)
    job = queue.enqueue("slow", timeout=50)
    await queue.join()

    assert job.status == queue.COMPLETED
    assert job.attempts == 2
    assert job.result == 2
    assert job.error == f"Job {job.id} timed out after 50 ms"


@pytest.mark.asyncio
async def test_queue_default_timeout():
    queue = JobQueue("strict", timeout=timedelta(milliseconds=20))

    async def hang(payload, job):
        await asyncio.sleep(1)

    queue.register_handler("hang", hang)
    job = queue.enqueue("hang", max_attempts=1)
    await queue.join()
    await queue.close()

    assert job.timeout == 20
    assert job.status == queue.FAILED
    assert job.error == str(HandlerTimeout(job.id, 20))


def test_backoff_delay():
    assert JobQueue._backoff_delay(0) == 1000
    assert JobQueue._backoff_delay(1) == 2000
    assert JobQueue._backoff_delay(2) == 4000
    assert JobQueue._backoff_delay(3) == 8000
    assert JobQueue._backoff_delay(2, backoff_base=100) == 400


def test_backoff_delay_cap():
    assert JobQueue._backoff_delay(10, 1000, 60_000) == 60_000
    assert JobQueue._backoff_delay(20, 1000, None) == 1000 * 2**20
    assert JobQueue._backoff_delay(30) == JobQueue.DEFAULT_MAX_RETRY_DELAY


@pytest.mark.asyncio
async def test_retry_delay_capped():
    queue = JobQueue("capped", backoff_base=1000, max_retry_delay=15)
    calls = 0

    async def fail_once(payload, job):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")

    queue.register_handler("fail_once", fail_once)
    job = queue.enqueue("fail_once")
    await queue.join()
    await queue.close()

    assert job.status == queue.COMPLETED
    assert job.delay == 15


@pytest.mark.asyncio
async def test_retried_job_keeps_fifo_position():
    queue = JobQueue("fifo", concurrency=1, backoff_base=1)
    order = []
    failed = set()

    async def work(payload, job):
        order.append(payload)
        if payload == "a" and "a" not in failed:
            failed.add("a")
            raise RuntimeError("boom")
        if payload == "b":
            await asyncio.sleep(0.05)

    queue.register_handler("work", work)
    queue.enqueue("work", "a")
    queue.enqueue("work", "b")
    queue.enqueue("work", "c")
    await queue.join()
    await queue.close()

    # "a" is ready again while "b" runs and goes before "c"
    assert order == ["a", "b", "a", "c"]


@pytest.mark.asyncio
async def test_sync_handler(queue: JobQueue):
    queue.register_handler("increment", lambda payload, job: payload + 1)
    job = queue.enqueue("increment", 1)
    await queue.join()

    assert job.status == queue.COMPLETED
    assert job.result == 2


@pytest.mark.asyncio
async def test_cancelled_error_from_handler_is_retried(queue: JobQueue):
    calls = 0

    async def await_cancelled_future(payload, job):
        nonlocal calls
        calls += 1
        future = asyncio.get_running_loop().create_future()
        future.cancel()
        await future

    queue.register_handler("cancelled", await_cancelled_future)
    job = queue.enqueue("cancelled")
    await queue.join()

    assert job.status == queue.FAILED
    assert job.attempts == job.max_attempts == 3
    assert job.error == "CancelledError"

    await asyncio.sleep(0.1)
    assert calls == 3


@pytest.mark.asyncio
async def test_handler_timeout_error_not_reported_as_job_timeout(queue: JobQueue):
    async def upstream_timeout(payload, job):
        raise TimeoutError("upstream read timed out")

    queue.register_handler("upstream", upstream_timeout)
    job = queue.enqueue("upstream", timeout=5000, max_attempts=1)
    await queue.join()

    assert job.status == queue.FAILED
    assert job.error == "upstream read timed out"
    assert "HandlerTimeout" not in job.error_trace
