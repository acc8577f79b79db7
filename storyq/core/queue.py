import asyncio
import bisect
import inspect
import itertools
import logging
import random
import string
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable

from storyq.core.base import (
    BaseJobQueue,
    DecoratedCallable,
    Handler,
    HandlerNotFound,
    HandlerTimeout,
    QueueError,
    SchedulerInvariantError,
)
from storyq.core.store import AsyncJobStore
from storyq.core import common
from storyq.models.job import Job, JobStatusValueType, utcnow
from storyq.models.queue_stats import QueueStats
from storyq.models.raw_job import RawJob


logger = logging.getLogger(__name__)

JOB_ID_ALPHABET = string.ascii_lowercase + string.digits


class JobQueue(BaseJobQueue):
    """In-process job queue with priorities, retries and bounded concurrency.

    Jobs are processed on the running asyncio event loop. At most
    ``concurrency`` handlers of the same queue run at once. Waiting jobs are
    started in descending priority order, jobs of equal priority in the
    order they were enqueued.

    A job whose handler raises is retried with exponential backoff until it
    reaches ``max_attempts``, after which it is marked as failed. Handler
    errors never propagate to the code that enqueued the job; they are
    recorded on the job instead.

    Examples:

        Create a queue and register a handler
        >>> queue = JobQueue("story_generation", concurrency=2)
        >>> @queue.handler("generate_story")
        ... async def generate_story(payload, job):
        ...     return await generate_story_content(payload["story_id"])

        Enqueue a job, it starts as soon as a slot is free
        >>> job = queue.enqueue("generate_story", {"story_id": 42}, priority=5)

        Poll the job
        >>> queue.get_job(job.id).status
        'waiting'

        Wait until every job is completed or failed
        >>> await queue.join()

    Args:
        name (str): Queue name. Used in job IDs and log records.
        concurrency (int): Maximum number of jobs processed at once.
            Defaults to 3.
        max_attempts (int): Default maximum number of attempts for jobs
            enqueued without one. Defaults to 3.
        backoff_base (int | timedelta): Base for the exponential backoff.
            The delay before the next attempt is
            ``backoff_base * 2 ** attempts`` milliseconds. Defaults to
            1 second.
        max_retry_delay (int | timedelta | None): Upper bound of the retry
            delay. None disables the bound. Defaults to 12 hours.
        timeout (int | timedelta | None): Default handler timeout for jobs
            enqueued without one. None disables timeouts. Defaults to None.
        store (AsyncJobStore | None): Optional durable store for job
            snapshots. Defaults to None (memory only).
    """

    def __init__(
        self,
        name: str,
        concurrency: int = BaseJobQueue.DEFAULT_CONCURRENCY,
        max_attempts: int = BaseJobQueue.DEFAULT_MAX_ATTEMPTS,
        backoff_base: int | timedelta = BaseJobQueue.DEFAULT_BACKOFF_BASE,
        max_retry_delay: int | timedelta | None = BaseJobQueue.DEFAULT_MAX_RETRY_DELAY,
        timeout: int | timedelta | None = None,
        store: AsyncJobStore | None = None,
    ) -> None:
        common.validate_queue_name(name)
        common.validate_concurrency(concurrency)
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")

        self.name = name
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_base = common.to_milliseconds(backoff_base)
        self.max_retry_delay = common.to_milliseconds(max_retry_delay)
        self.timeout = common.to_milliseconds(timeout)
        self.store = store
        self.handlers: dict[str, Handler] = {}

        self._waiting: list[Job] = []
        self._processing: dict[str, Job] = {}
        self._completed: list[Job] = []
        self._failed: list[Job] = []
        self._tasks: dict[str, asyncio.Task] = {}
        self._seq = itertools.count()
        self._scheduling = False
        self._closed = False
        self._cancelling = False
        self._timer: asyncio.TimerHandle | None = None
        self._timer_at: datetime | None = None
        self._schedule_handle: asyncio.Handle | None = None
        self._idle = asyncio.Event()
        self._pending_writes: deque[tuple[str, Any]] = deque()
        self._writer: asyncio.Task | None = None

    def register_handler(self, job_type: str, handler: Handler) -> "JobQueue":
        """Register the handler for a job type.

        The handler is called as ``await handler(payload, job)`` and whatever
        it returns is stored as the job result. Registering another handler
        for the same type replaces the previous one.

        Jobs may be enqueued before their handler is registered. If such a
        job is picked for processing while the type still has no handler,
        it fails permanently with ``HandlerNotFound``.

        Returns:
            JobQueue: The queue itself, for chaining.
        """
        common.validate_job_type(job_type)
        common.validate_handler(handler)
        if job_type in self.handlers:
            logger.debug(f"Replacing handler for {job_type} in queue {self.name}")
        self.handlers[job_type] = handler
        return self

    def handler(self, job_type: str) -> Callable[[DecoratedCallable], DecoratedCallable]:
        """Decorate a coroutine function to handle a job type.

        Examples:

            >>> @queue.handler("send_email")
            ... async def send(payload, job):
            ...     await mailer.send(**payload)
        """

        def decorator(fn: DecoratedCallable) -> DecoratedCallable:
            self.register_handler(job_type, fn)
            return fn

        return decorator

    def enqueue(
        self,
        job_type: str,
        payload: Any | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        delay: int | timedelta | None = None,
        timeout: int | timedelta | None = None,
    ) -> Job:
        """Enqueue a job for processing.

        Never waits for the job to run. The job is placed among the waiting
        jobs according to its priority and the scheduler is triggered for the
        next iteration of the event loop. When there is no running event
        loop, the job stays waiting until the queue is used from within one,
        e.g. with ``await queue.join()``.

        Args:
            job_type (str): Selects the handler.
            payload (Any | None): Passed to the handler untouched.
            priority (int | None): Higher runs first. Defaults to 0.
            max_attempts (int | None): Maximum number of attempts. Defaults
                to the queue's ``max_attempts``.
            delay (int | timedelta | None): Do not start the job before this
                many milliseconds have passed. Defaults to no delay.
            timeout (int | timedelta | None): Handler timeout. Defaults to
                the queue's ``timeout``.

        Returns:
            Job: The created job. The queue keeps updating it in place.
        """
        if self._closed:
            raise QueueError(f"Queue {self.name} is closed")

        p = common.parse_enqueue_params(
            job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            delay=delay,
            timeout=timeout,
            default_max_attempts=self.max_attempts,
            default_timeout=self.timeout,
        )

        now = utcnow()
        job = Job(
            id=self._generate_job_id(),
            queue=self.name,
            type=p.job_type,
            payload=p.payload,
            status=self.WAITING,
            priority=p.priority,
            max_attempts=p.max_attempts,
            timeout=p.timeout_ms,
            created_at=now,
            _seq=next(self._seq),
        )
        job.postpone(p.delay_ms, now)
        self._insert_waiting(job)

        logger.info(
            "Job added to queue",
            extra=self._log_context(job, priority=job.priority, delay=job.delay),
        )
        self._persist(job)
        self._request_schedule()
        return job

    def get_stats(self) -> QueueStats:
        """Point-in-time job counts of the queue."""
        return QueueStats(
            name=self.name,
            waiting=len(self._waiting),
            processing=len(self._processing),
            completed=len(self._completed),
            failed=len(self._failed),
            concurrency=self.concurrency,
        )

    def get_job(self, job_id: str) -> Job | None:
        """Get a job by ID, whatever its status.

        Returns:
            Job | None: The job or None if the queue does not know it,
            including jobs removed by ``cleanup()``.
        """
        common.validate_job_id(job_id)
        if job_id in self._processing:
            return self._processing[job_id]
        for jobs in (self._waiting, self._completed, self._failed):
            for job in jobs:
                if job.id == job_id:
                    return job
        return None

    def jobs(self, status: JobStatusValueType | None = None) -> list[Job]:
        """List the jobs known to the queue.

        Waiting jobs come first in the order they will be considered,
        followed by processing, completed and failed jobs.
        """
        groups = {
            self.WAITING: self._waiting,
            self.PROCESSING: list(self._processing.values()),
            self.COMPLETED: self._completed,
            self.FAILED: self._failed,
        }
        if status is not None:
            if status not in groups:
                raise ValueError(f"Unknown job status: {status}")
            return list(groups[status])
        return [job for jobs in groups.values() for job in jobs]

    def cleanup(
        self, max_age: int | timedelta = BaseJobQueue.DEFAULT_CLEANUP_MAX_AGE
    ) -> int:
        """Forget completed and failed jobs that finished long ago.

        Waiting and processing jobs are never removed, whatever their age.

        Args:
            max_age (int | timedelta): Remove jobs that finished more than
                this many milliseconds ago. Defaults to 24 hours.

        Returns:
            int: Number of jobs removed.
        """
        max_age_ms = common.to_milliseconds(max_age)
        if max_age_ms is None or max_age_ms < 0:
            raise ValueError("max_age must be a non-negative duration")
        cutoff = utcnow() - timedelta(milliseconds=max_age_ms)

        old_completed = [j for j in self._completed if j.completed_at < cutoff]
        old_failed = [j for j in self._failed if j.failed_at < cutoff]
        self._completed = [j for j in self._completed if j.completed_at >= cutoff]
        self._failed = [j for j in self._failed if j.failed_at >= cutoff]

        cleaned = len(old_completed) + len(old_failed)
        if cleaned > 0:
            logger.info(
                "Queue cleanup completed",
                extra={
                    "queue": self.name,
                    "cleaned": cleaned,
                    "completed": len(old_completed),
                    "failed": len(old_failed),
                },
            )
            if self.store is not None:
                self._pending_writes.append(
                    ("delete", [j.id for j in old_completed + old_failed])
                )
                self._ensure_writer()
        return cleaned

    async def join(self) -> None:
        """Wait until no job is waiting or processing."""
        self._schedule()
        while self._waiting or self._processing:
            if self._closed:
                return
            self._idle.clear()
            await self._idle.wait()

    async def recover(self) -> int:
        """Reload the unfinished jobs of this queue from the store.

        Jobs that were processing when the previous process stopped are put
        back to waiting; the interrupted attempt does not count. Jobs the
        queue already knows are skipped.

        Returns:
            int: Number of jobs recovered.
        """
        if self.store is None:
            return 0

        recovered = 0
        for job in await self.store.unfinished(self.name):
            if self.get_job(job.id) is not None:
                continue
            job.status = self.WAITING
            job.started_at = None
            job._seq = next(self._seq)
            self._insert_waiting(job)
            self._persist(job)
            recovered += 1

        if recovered:
            logger.info(
                "Recovered jobs from store",
                extra={"queue": self.name, "recovered": recovered},
            )
        self._schedule()
        return recovered

    async def flush(self) -> None:
        """Wait until every pending store write has been applied."""
        if self._pending_writes:
            self._ensure_writer()
        while self._writer is not None and not self._writer.done():
            await asyncio.shield(self._writer)

    async def close(self, cancel: bool = False) -> None:
        """Stop scheduling new jobs.

        Args:
            cancel (bool): Cancel the handlers that are still running and
                put their jobs back to waiting. When False, wait for them to
                finish. Defaults to False.
        """
        self._closed = True
        self._cancel_timer()
        if self._schedule_handle is not None:
            self._schedule_handle.cancel()
            self._schedule_handle = None

        tasks = list(self._tasks.values())
        if cancel:
            self._cancelling = True
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.flush()
        self._idle.set()
        logger.debug(f"Queue {self.name} closed")

    def _generate_job_id(self) -> str:
        suffix = "".join(random.choices(JOB_ID_ALPHABET, k=9))
        return f"{self.name}_{int(time.time() * 1000)}_{suffix}"

    @staticmethod
    def _sort_key(job: Job) -> tuple[int, int]:
        return (-job.priority, job._seq)

    def _insert_waiting(self, job: Job) -> None:
        bisect.insort(self._waiting, job, key=self._sort_key)

    def _log_context(self, job: Job, **fields: Any) -> dict[str, Any]:
        return {
            "queue": self.name,
            "job_id": job.id,
            "job_type": job.type,
            **fields,
        }

    def _request_schedule(self) -> None:
        """Run the scheduler on the next iteration of the event loop.

        Jobs enqueued one after another without yielding to the loop are
        therefore all sorted by priority before any of them starts.
        """
        if self._schedule_handle is not None or self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, queue {self.name} will be scheduled later")
            return
        self._schedule_handle = loop.call_soon(self._on_schedule_requested)

    def _on_schedule_requested(self) -> None:
        self._schedule_handle = None
        self._schedule()

    def _schedule(self) -> None:
        """Start ready jobs while there are free slots."""
        if self._scheduling or self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, queue {self.name} will be scheduled later")
            return

        self._scheduling = True
        try:
            now = utcnow()
            while len(self._processing) < self.concurrency:
                job = self._pop_ready(now)
                if job is None:
                    break
                self._start(job, loop)
            self._arm_timer(loop, now)
        finally:
            self._scheduling = False

    def _pop_ready(self, now: datetime) -> Job | None:
        for index, job in enumerate(self._waiting):
            if job.is_ready(now):
                del self._waiting[index]
                return job
        return None

    def _arm_timer(self, loop: asyncio.AbstractEventLoop, now: datetime) -> None:
        """Wake the scheduler up when the next delayed job becomes ready.

        A single timer per queue is kept for the earliest ``ready_at``.
        """
        delayed = [job.ready_at for job in self._waiting if job.ready_at > now]
        if not delayed:
            self._cancel_timer()
            return

        wake_at = min(delayed)
        if self._timer is not None and self._timer_at is not None and self._timer_at <= wake_at:
            return

        self._cancel_timer()
        self._timer_at = wake_at
        self._timer = loop.call_later(
            (wake_at - now).total_seconds(), self._on_timer
        )

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_at = None
        self._schedule()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_at = None

    def _check_state(self, job: Job, status: str) -> None:
        if job.status != status:
            raise SchedulerInvariantError(
                f"Job {job.id} has status {job.status!r}, expected {status!r}"
            )
        if status == self.PROCESSING and self._processing.get(job.id) is not job:
            raise SchedulerInvariantError(
                f"Job {job.id} is not in the processing set of queue {self.name}"
            )

    def _start(self, job: Job, loop: asyncio.AbstractEventLoop) -> None:
        self._check_state(job, self.WAITING)
        job.status = self.PROCESSING
        job.started_at = utcnow()
        self._processing[job.id] = job

        logger.info(
            "Job processing started",
            extra=self._log_context(job, attempt=job.attempts + 1),
        )
        self._persist(job)
        self._tasks[job.id] = loop.create_task(self._run(job))

    async def _run(self, job: Job) -> None:
        try:
            handler = self.handlers.get(job.type)
            if handler is None:
                raise HandlerNotFound(job.type)
            result = await self._invoke(handler, job)
        except asyncio.CancelledError as e:
            if self._cancelling:
                self._requeue(job)
                raise
            # Raised by the handler itself, not by close(cancel=True)
            self._fail(job, e)
        except HandlerNotFound as e:
            self._fail(job, e, retry=False)
        except Exception as e:
            self._fail(job, e)
        else:
            self._complete(job, result)
        finally:
            self._tasks.pop(job.id, None)
            self._schedule()
            if not self._waiting and not self._processing:
                self._idle.set()

    async def _invoke(self, handler: Handler, job: Job) -> Any:
        if job.timeout is None:
            return await self._call(handler, job)
        loop = asyncio.get_running_loop()
        # The loop may run timers up to one clock tick early
        deadline = (
            loop.time()
            + job.timeout / 1000
            - time.get_clock_info("monotonic").resolution
        )
        try:
            return await asyncio.wait_for(
                self._call(handler, job), job.timeout / 1000
            )
        except asyncio.TimeoutError:
            # A TimeoutError raised by the handler before the deadline is
            # its own error
            if loop.time() < deadline:
                raise
            raise HandlerTimeout(job.id, job.timeout) from None

    @staticmethod
    async def _call(handler: Handler, job: Job) -> Any:
        result = handler(job.payload, job)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _complete(self, job: Job, result: Any) -> None:
        self._check_state(job, self.PROCESSING)
        del self._processing[job.id]

        job.attempts += 1
        job.status = self.COMPLETED
        job.result = result
        job.completed_at = utcnow()
        self._completed.append(job)

        logger.info(
            "Job completed successfully",
            extra=self._log_context(
                job, attempt=job.attempts, duration=job.duration
            ),
        )
        self._persist(job)

    def _fail(self, job: Job, exception: BaseException, retry: bool = True) -> None:
        self._check_state(job, self.PROCESSING)
        del self._processing[job.id]

        job.attempts += 1
        job.record_error(exception)
        logger.error(
            "Job processing failed",
            extra=self._log_context(job, attempt=job.attempts, error=job.error),
            exc_info=exception,
        )

        if not retry or job.attempts >= job.max_attempts:
            job.status = self.FAILED
            job.failed_at = utcnow()
            self._failed.append(job)
            logger.error(
                "Job failed permanently",
                extra=self._log_context(job, total_attempts=job.attempts),
            )
        else:
            delay = self._backoff_delay(
                job.attempts, self.backoff_base, self.max_retry_delay
            )
            job.postpone(delay)
            job.status = self.WAITING
            self._insert_waiting(job)
            logger.info(
                "Job scheduled for retry",
                extra=self._log_context(
                    job, delay=delay, next_attempt=job.attempts + 1
                ),
            )
        self._persist(job)

    def _requeue(self, job: Job) -> None:
        """Put a job whose handler was cancelled back to waiting."""
        if self._processing.get(job.id) is not job:
            return
        del self._processing[job.id]
        job.status = self.WAITING
        job.started_at = None
        self._insert_waiting(job)
        logger.warning(
            "Job processing cancelled",
            extra=self._log_context(job, attempt=job.attempts + 1),
        )
        self._persist(job)

    def _persist(self, job: Job) -> None:
        if self.store is None:
            return
        self._pending_writes.append(("save", RawJob.from_job(job)))
        self._ensure_writer()

    def _ensure_writer(self) -> None:
        if self._writer is not None and not self._writer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._writer = loop.create_task(self._write_pending())

    async def _write_pending(self) -> None:
        """Apply store writes one by one, in the order they were made."""
        while self._pending_writes:
            operation, argument = self._pending_writes.popleft()
            try:
                if operation == "save":
                    await self.store.save_snapshot(argument)
                else:
                    await self.store.delete(argument)
            except Exception as e:
                logger.error(
                    "Failed to persist job state",
                    extra={"queue": self.name, "operation": operation, "error": str(e)},
                    exc_info=e,
                )
