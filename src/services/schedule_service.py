# src/services/schedule_service.py
"""User-facing operations on scheduled jobs: schedule, cancel, retry and the manual story steps."""
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Union

import structlog

from src.exceptions import ConflictError, InvalidStateError, JobNotFoundError, ValidationError
from src.infrastructure.database import get_session
from src.infrastructure.image_store import CloudinaryImageStore
from src.models.enums import JobStatus, PostType, Theme
from src.models.post import SourcePost
from src.models.scheduled_job import ScheduledJob
from src.services.job_queue import PENDING_STATES, JobQueue
from src.services.job_store import JobStore
from src.services.renderer import default_theme
from src.utils import to_naive_utc, utcnow

logger = structlog.get_logger(__name__)

RETRY_DELAY_SECONDS = 60


def queue_payload(job: ScheduledJob) -> dict:
    return {"job_id": str(job.id)}


class ScheduleService:
    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        image_store: Optional[CloudinaryImageStore] = None,
        session_factory: Callable = get_session,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.image_store = image_store
        self.session_factory = session_factory
        self._clock = clock

    # --- scheduling ---

    def _validate_fire_at(self, fire_at: datetime) -> datetime:
        if fire_at is None:
            raise ValidationError("Scheduled time is required")
        fire_at = to_naive_utc(fire_at)
        if fire_at <= self._clock():
            raise ValidationError("Scheduled time must be in the future")
        return fire_at

    @staticmethod
    def _resolve_theme(theme: Optional[Union[Theme, str]], fire_at: datetime) -> Theme:
        if theme is None:
            return default_theme(fire_at)
        try:
            return Theme(theme)
        except ValueError:
            raise ValidationError(f"Unknown theme: {theme}")

    async def _owned_post(self, user_id: uuid.UUID, post_id: uuid.UUID) -> Optional[SourcePost]:
        async with self.session_factory() as session:
            post = await session.get(SourcePost, post_id)
        if post is None or post.user_id != user_id:
            return None
        return post

    async def schedule_post(
        self,
        user_id: uuid.UUID,
        post_id: uuid.UUID,
        fire_at: datetime,
        theme: Optional[Union[Theme, str]] = None,
        post_type: PostType = PostType.STORY,
        preview_url: Optional[str] = None,
    ) -> ScheduledJob:
        """
        Persist a PENDING job and enqueue its single execution at ``fire_at``.
        Raises ValidationError for a past time, unknown post or theme, ConflictError
        when the post already has an active job.
        """
        fire_at = self._validate_fire_at(fire_at)
        selected_theme = self._resolve_theme(theme, fire_at)
        if await self._owned_post(user_id, post_id) is None:
            raise ValidationError("Post not found")

        job = ScheduledJob(
            user_id=user_id,
            post_id=post_id,
            theme=selected_theme,
            post_type=PostType(post_type),
            scheduled_for=fire_at,
            preview_url=preview_url,
        )
        job = await self.store.create(job)

        try:
            await self.queue.enqueue(job.queue_key, queue_payload(job), fire_at)
        except Exception:
            logger.exception("job_enqueue_failed", job_id=str(job.id))
            await self.store.cancel(job.id)
            raise

        logger.info(
            "post_scheduled",
            job_id=str(job.id),
            user_id=str(user_id),
            post_type=job.post_type.value,
            theme=job.theme.value,
            scheduled_for=fire_at.isoformat(),
        )
        return job

    async def schedule_posts(
        self,
        user_id: uuid.UUID,
        post_ids: Iterable[uuid.UUID],
        fire_at: datetime,
        theme: Optional[Union[Theme, str]] = None,
        post_type: PostType = PostType.STORY,
        preview_url: Optional[str] = None,
    ) -> List[ScheduledJob]:
        """Bulk variant: posts that are missing or already active are skipped."""
        post_ids = list(post_ids)
        if not post_ids:
            raise ValidationError("At least one post is required")
        fire_at = self._validate_fire_at(fire_at)
        selected_theme = self._resolve_theme(theme, fire_at)

        created: List[ScheduledJob] = []
        for post_id in post_ids:
            try:
                job = await self.schedule_post(user_id, post_id, fire_at, selected_theme, post_type, preview_url)
            except (ValidationError, ConflictError) as exc:
                logger.info("bulk_schedule_skipped", post_id=str(post_id), reason=str(exc))
                continue
            created.append(job)
        return created

    # --- lifecycle operations ---

    async def _owned_job(self, job_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> ScheduledJob:
        job = await self.store.require(job_id)
        if user_id is not None and job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> None:
        """Delete a PENDING, COMPLETED or FAILED job and drop its pending execution."""
        job = await self._owned_job(job_id, user_id)
        await self.store.cancel(job.id)
        await self.queue.cancel(job.queue_key)

        if job.image_id and self.image_store is not None:
            try:
                await self.image_store.delete(job.image_id)
            except Exception as exc:
                logger.warning("image_delete_failed", job_id=str(job.id), image_id=job.image_id, error=str(exc))

    async def retry_job(self, job_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> ScheduledJob:
        job = await self._owned_job(job_id, user_id)
        if job.status != JobStatus.FAILED:
            raise InvalidStateError("Can only retry failed posts")

        fire_at = self._clock() + timedelta(seconds=RETRY_DELAY_SECONDS)
        moved = await self.store.transition(
            job.id,
            {JobStatus.FAILED},
            JobStatus.PENDING,
            {"scheduled_for": fire_at, "error_message": None},
        )
        if not moved:
            raise InvalidStateError("Can only retry failed posts")

        await self.queue.enqueue(job.queue_key, queue_payload(job), fire_at)
        logger.info("job_retry_scheduled", job_id=str(job.id), scheduled_for=fire_at.isoformat())
        return await self.store.require(job.id)

    async def mark_manually_posted(self, job_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> ScheduledJob:
        """Record that a rendered story was posted by hand. No pipeline action follows."""
        job = await self._owned_job(job_id, user_id)
        if job.status != JobStatus.COMPLETED or job.post_type != PostType.STORY:
            raise InvalidStateError("Only completed stories can be marked as posted")

        moved = await self.store.transition(
            job.id, {JobStatus.COMPLETED}, JobStatus.COMPLETED, {"posted_at": self._clock()}
        )
        if not moved:
            raise InvalidStateError("Only completed stories can be marked as posted")
        logger.info("job_marked_posted", job_id=str(job.id))
        return await self.store.require(job.id)

    async def complete_with_preview(self, job_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> ScheduledJob:
        """Finish a pending story right away, using its client-rendered preview as the image."""
        job = await self._owned_job(job_id, user_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError("Can only complete pending posts")
        if job.post_type != PostType.STORY or not job.preview_url:
            raise InvalidStateError("Only stories with a preview can be completed early")

        moved = await self.store.transition(
            job.id,
            {JobStatus.PENDING},
            JobStatus.COMPLETED,
            {"image_url": job.image_url or job.preview_url},
        )
        if not moved:
            raise InvalidStateError("Can only complete pending posts")
        await self.queue.cancel(job.queue_key)
        logger.info("job_completed_from_preview", job_id=str(job.id))
        return await self.store.require(job.id)

    async def list_jobs(self, user_id: uuid.UUID, status: Optional[JobStatus] = None) -> List[ScheduledJob]:
        return await self.store.list_for_user(user_id, status)

    async def requeue_pending(self) -> int:
        """Re-enqueue PENDING jobs that have no pending execution in the queue."""
        requeued = 0
        for job in await self.store.list_pending():
            state = await self.queue.get_state(job.queue_key)
            if state in PENDING_STATES:
                continue
            fire_at = max(job.scheduled_for, self._clock())
            await self.queue.enqueue(job.queue_key, queue_payload(job), fire_at)
            requeued += 1
        if requeued:
            logger.info("pending_jobs_requeued", count=requeued)
        return requeued
