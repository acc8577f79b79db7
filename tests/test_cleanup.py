import asyncio
from datetime import timedelta

import pytest

from storyq import JobQueue
from storyq.models.job import utcnow
from .fixtures import queue


def age(job, hours: float):
    """Pretend the job finished ``hours`` ago."""
    finished = utcnow() - timedelta(hours=hours)
    if job.completed_at is not None:
        job.completed_at = finished
    if job.failed_at is not None:
        job.failed_at = finished


@pytest.mark.asyncio
async def test_cleanup_removes_old_finished_jobs(queue: JobQueue):
    queue.register_handler("ok", lambda payload, job: payload)

    old_completed = [queue.enqueue("ok", n) for n in range(2)]
    recent = queue.enqueue("ok", 2)
    old_failed = queue.enqueue("missing")
    await queue.join()

    for job in old_completed + [old_failed]:
        age(job, hours=25)
    age(recent, hours=1)

    assert queue.cleanup() == 3

    for job in old_completed + [old_failed]:
        assert queue.get_job(job.id) is None
    assert queue.get_job(recent.id) is recent

    stats = queue.get_stats()
    assert stats.completed == 1
    assert stats.failed == 0

    # Nothing left to remove
    assert queue.cleanup() == 0


@pytest.mark.asyncio
async def test_cleanup_custom_max_age(queue: JobQueue):
    queue.register_handler("ok", lambda payload, job: payload)
    job = queue.enqueue("ok")
    await queue.join()
    age(job, hours=2)

    assert queue.cleanup(timedelta(hours=3)) == 0
    assert queue.cleanup(3600 * 1000) == 1
    assert queue.get_job(job.id) is None


@pytest.mark.asyncio
async def test_cleanup_keeps_waiting_jobs(queue: JobQueue):
    job = queue.enqueue("noop", delay=timedelta(hours=1))
    job.created_at = utcnow() - timedelta(days=2)

    assert queue.cleanup(0) == 0
    assert queue.get_job(job.id) is job


@pytest.mark.asyncio
async def test_cleanup_keeps_processing_jobs(queue: JobQueue):
    started = asyncio.Event()
    release = asyncio.Event()

    async def block(payload, job):
        started.set()
        await release.wait()

    queue.register_handler("block", block)
    job = queue.enqueue("block")
    await started.wait()
    job.created_at = utcnow() - timedelta(days=2)

    assert queue.cleanup(0) == 0
    assert queue.get_job(job.id) is job
    assert job.status == queue.PROCESSING

    release.set()
    await queue.join()
    assert job.status == queue.COMPLETED


@pytest.mark.asyncio
async def test_cleanup_invalid_max_age(queue: JobQueue):
    with pytest.raises(ValueError):
        queue.cleanup(-1)
    with pytest.raises(ValueError):
        queue.cleanup(None)
