"""
Storybook generation pipeline.

Groups the queues used by the storybook application: story text, page
illustrations, narration audio and notification emails. The pipeline is
built once at application start and handed to the request handlers, which
enqueue work through the ``add_*_job`` helpers and expose ``get_all_stats()``
and ``find_job()`` to monitoring and progress polling endpoints.

The AI providers, the mailer and the datastore are not part of storyq. They
are passed in as coroutine functions:

    generate_story_content(story_id)
    generate_story_image(prompt, story_id=..., page_id=...)
    generate_story_audio(text, story_id=..., page_id=...)
    send_email(to, subject, template, data)

A collaborator left out keeps its job type unregistered, so such jobs fail
with ``HandlerNotFound``.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from storyq.config import QueueSettings
from storyq.core.base import BaseJobQueue, StoryGenerationError
from storyq.core.queue import JobQueue
from storyq.core.store import AsyncJobStore
from storyq.log import configure_logging
from storyq.models.job import Job


logger = logging.getLogger(__name__)

STORY_QUEUE = "story_generation"
IMAGE_QUEUE = "image_generation"
AUDIO_QUEUE = "audio_generation"
EMAIL_QUEUE = "email_notifications"

GENERATE_STORY = "generate_story"
GENERATE_IMAGE = "generate_image"
GENERATE_AUDIO = "generate_audio"
SEND_EMAIL = "send_email"


class StoryPipeline:
    """The job queues of the storybook application.

    Examples:

        Build the pipeline from the environment at startup
        >>> pipeline = StoryPipeline.from_settings(
        ...     QueueSettings(),
        ...     generate_story_content=story_service.generate,
        ...     send_email=mailer.send,
        ... )
        >>> await pipeline.start()

        In a request handler, after the story row was created
        >>> job = pipeline.add_story_generation_job(story.id, priority=1)

        In the progress endpoint
        >>> pipeline.find_job(job_id).to_dict()

        At shutdown
        >>> await pipeline.close()

    Args:
        story (JobQueue): Queue of the story text generation jobs.
        image (JobQueue): Queue of the illustration jobs.
        audio (JobQueue): Queue of the narration jobs.
        email (JobQueue): Queue of the notification emails.
        cleanup_interval (float): Seconds between two cleanup sweeps.
            Defaults to 1 hour.
        cleanup_max_age (int): Age in milliseconds after which finished jobs
            are removed. Defaults to 24 hours.
        store (AsyncJobStore | None): The store shared by the queues, if any.
    """

    def __init__(
        self,
        story: JobQueue,
        image: JobQueue,
        audio: JobQueue,
        email: JobQueue,
        cleanup_interval: float = 3600,
        cleanup_max_age: int = BaseJobQueue.DEFAULT_CLEANUP_MAX_AGE,
        store: AsyncJobStore | None = None,
    ) -> None:
        self.story = story
        self.image = image
        self.audio = audio
        self.email = email
        self.cleanup_interval = cleanup_interval
        self.cleanup_max_age = cleanup_max_age
        self.store = store
        self.stop_event = asyncio.Event()
        self._cleanup_task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        settings: QueueSettings | None = None,
        generate_story_content: Callable[..., Awaitable[Any]] | None = None,
        generate_story_image: Callable[..., Awaitable[Any]] | None = None,
        generate_story_audio: Callable[..., Awaitable[Any]] | None = None,
        send_email: Callable[..., Awaitable[Any]] | None = None,
        store: AsyncJobStore | None = None,
    ) -> "StoryPipeline":
        """Build the four queues and register the handlers.

        Configures the storyq logger from ``settings.log_level`` and
        ``settings.log_json``. A store is created from
        ``settings.database_url`` unless one is passed explicitly.
        """
        settings = settings or QueueSettings()
        configure_logging(settings.log_level, json_format=settings.log_json)
        if store is None and settings.database_url:
            store = AsyncJobStore(settings.database_url)

        def make_queue(name: str, concurrency: int) -> JobQueue:
            return JobQueue(
                name,
                concurrency=concurrency,
                max_attempts=settings.max_attempts,
                backoff_base=settings.backoff_base,
                max_retry_delay=settings.max_retry_delay,
                timeout=settings.job_timeout,
                store=store,
            )

        pipeline = cls(
            story=make_queue(STORY_QUEUE, settings.story_concurrency),
            image=make_queue(IMAGE_QUEUE, settings.image_concurrency),
            audio=make_queue(AUDIO_QUEUE, settings.audio_concurrency),
            email=make_queue(EMAIL_QUEUE, settings.email_concurrency),
            cleanup_interval=settings.cleanup_interval,
            cleanup_max_age=settings.cleanup_max_age,
            store=store,
        )
        pipeline.register_handlers(
            generate_story_content=generate_story_content,
            generate_story_image=generate_story_image,
            generate_story_audio=generate_story_audio,
            send_email=send_email,
        )
        return pipeline

    @property
    def queues(self) -> dict[str, JobQueue]:
        return {
            "story": self.story,
            "image": self.image,
            "audio": self.audio,
            "email": self.email,
        }

    def register_handlers(
        self,
        generate_story_content: Callable[..., Awaitable[Any]] | None = None,
        generate_story_image: Callable[..., Awaitable[Any]] | None = None,
        generate_story_audio: Callable[..., Awaitable[Any]] | None = None,
        send_email: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        if generate_story_content is not None:

            async def generate_story(payload: dict, job: Job) -> Any:
                story_id = payload["story_id"]
                logger.info(
                    "Starting story generation",
                    extra={"story_id": story_id, "job_id": job.id},
                )
                try:
                    result = await generate_story_content(story_id)
                except Exception as e:
                    raise StoryGenerationError(
                        "content_generation", str(e), story_id
                    ) from e
                logger.info(
                    "Story generation completed",
                    extra={"story_id": story_id, "job_id": job.id},
                )
                return result

            self.story.register_handler(GENERATE_STORY, generate_story)

        if generate_story_image is not None:

            async def generate_image(payload: dict, job: Job) -> Any:
                story_id = payload["story_id"]
                page_id = payload.get("page_id")
                logger.info(
                    "Starting image generation",
                    extra={"story_id": story_id, "page_id": page_id, "job_id": job.id},
                )
                try:
                    result = await generate_story_image(
                        payload["prompt"], story_id=story_id, page_id=page_id
                    )
                except Exception as e:
                    raise StoryGenerationError(
                        "image_generation", str(e), story_id
                    ) from e
                logger.info(
                    "Image generation completed",
                    extra={"story_id": story_id, "page_id": page_id, "job_id": job.id},
                )
                return result

            self.image.register_handler(GENERATE_IMAGE, generate_image)

        if generate_story_audio is not None:

            async def generate_audio(payload: dict, job: Job) -> Any:
                story_id = payload["story_id"]
                page_id = payload.get("page_id")
                logger.info(
                    "Starting audio generation",
                    extra={"story_id": story_id, "page_id": page_id, "job_id": job.id},
                )
                try:
                    result = await generate_story_audio(
                        payload["text"], story_id=story_id, page_id=page_id
                    )
                except Exception as e:
                    raise StoryGenerationError(
                        "audio_generation", str(e), story_id
                    ) from e
                logger.info(
                    "Audio generation completed",
                    extra={"story_id": story_id, "page_id": page_id, "job_id": job.id},
                )
                return result

            self.audio.register_handler(GENERATE_AUDIO, generate_audio)

        if send_email is not None:

            async def deliver_email(payload: dict, job: Job) -> Any:
                to, subject = payload["to"], payload["subject"]
                logger.info(
                    "Sending email",
                    extra={"to": to, "subject": subject, "template": payload.get("template"), "job_id": job.id},
                )
                try:
                    result = await send_email(
                        to, subject, payload.get("template"), payload.get("data")
                    )
                except Exception as e:
                    logger.error(
                        "Email sending failed",
                        extra={"to": to, "subject": subject, "error": str(e)},
                    )
                    raise
                logger.info(
                    "Email sent successfully",
                    extra={"to": to, "subject": subject, "job_id": job.id},
                )
                return result

            self.email.register_handler(SEND_EMAIL, deliver_email)

    def add_story_generation_job(self, story_id: Any, priority: int = 0) -> Job:
        return self.story.enqueue(
            GENERATE_STORY, {"story_id": story_id}, priority=priority
        )

    def add_image_generation_job(
        self, story_id: Any, page_id: Any, prompt: str, priority: int = 0
    ) -> Job:
        return self.image.enqueue(
            GENERATE_IMAGE,
            {"story_id": story_id, "page_id": page_id, "prompt": prompt},
            priority=priority,
        )

    def add_audio_generation_job(
        self, story_id: Any, page_id: Any, text: str, priority: int = 0
    ) -> Job:
        return self.audio.enqueue(
            GENERATE_AUDIO,
            {"story_id": story_id, "page_id": page_id, "text": text},
            priority=priority,
        )

    def add_email_job(
        self,
        to: str,
        subject: str,
        template: str,
        data: dict | None = None,
        priority: int = 0,
    ) -> Job:
        return self.email.enqueue(
            SEND_EMAIL,
            {"to": to, "subject": subject, "template": template, "data": data},
            priority=priority,
        )

    def get_all_stats(self) -> dict[str, Any]:
        """Stats of every queue, for the monitoring endpoint."""
        stats: dict[str, Any] = {
            key: queue.get_stats().to_dict() for key, queue in self.queues.items()
        }
        stats["timestamp"] = datetime.now(timezone.utc).isoformat()
        return stats

    def find_job(self, job_id: str) -> Job | None:
        """Find a job in whichever queue owns it.

        Job IDs start with the name of their queue, which is tried first.
        """
        ordered = sorted(
            self.queues.values(),
            key=lambda queue: not job_id.startswith(f"{queue.name}_"),
        )
        for queue in ordered:
            job = queue.get_job(job_id)
            if job is not None:
                return job
        return None

    def cleanup(self, max_age: int | None = None) -> int:
        """Run one cleanup sweep over all queues.

        Returns:
            int: Number of jobs removed.
        """
        max_age = self.cleanup_max_age if max_age is None else max_age
        return sum(queue.cleanup(max_age) for queue in self.queues.values())

    async def recover(self) -> int:
        """Reload unfinished jobs of every queue from the store."""
        if self.store is None:
            return 0
        await self.store.create_all()
        recovered = 0
        for queue in self.queues.values():
            recovered += await queue.recover()
        return recovered

    async def start(self) -> None:
        """Recover stored jobs and start the periodic cleanup."""
        await self.recover()
        if self._cleanup_task is None or self._cleanup_task.done():
            self.stop_event.clear()
            self._cleanup_task = asyncio.create_task(self.run_cleanup())

    async def run_cleanup(self) -> None:
        """Sweep the queues every ``cleanup_interval`` seconds until stopped."""
        logger.info(
            f"Starting queue cleanup every {self.cleanup_interval} seconds"
        )
        while not self.stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self.stop_event.wait(), self.cleanup_interval
                )
            except asyncio.TimeoutError:
                self.cleanup()
        logger.debug("Queue cleanup stopped")

    def stop(self) -> None:
        """Request the periodic cleanup to stop."""
        self.stop_event.set()

    async def close(self, cancel: bool = False) -> None:
        """Stop the cleanup and close every queue."""
        self.stop()
        if self._cleanup_task is not None:
            await self._cleanup_task
            self._cleanup_task = None
        for queue in self.queues.values():
            await queue.close(cancel=cancel)
        if self.store is not None:
            await self.store.dispose()
