# src/services/job_processor.py
"""
Runs one scheduled job end to end:

    claim -> render -> upload -> (POST only) publish -> COMPLETED -> notify

The claim is a conditional PENDING -> PROCESSING update; losing it means
another worker already owns the job and this delivery is dropped.  Any error
after the claim moves the job to FAILED, records a failure notification and
is re-raised so the queue can count the attempt.
"""
import uuid
from typing import Callable, Optional, Tuple

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars
from sqlmodel import select

from src.exceptions import JobNotFoundError, ReconnectRequiredError, RenderError
from src.infrastructure.database import get_session
from src.infrastructure.image_store import CloudinaryImageStore
from src.infrastructure.instagram_client import InstagramClient, truncate_caption
from src.models.enums import JobStatus, PostType
from src.models.instagram_account import InstagramAccount
from src.models.post import SourcePost
from src.models.scheduled_job import ScheduledJob
from src.models.user import User
from src.services.job_queue import QueuedJob
from src.services.job_store import JobStore
from src.services.notifier import Notifier
from src.services.renderer import Renderer
from src.utils import decrypt_token, utcnow

logger = structlog.get_logger(__name__)

UPLOAD_FOLDER = "x2ig"


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        renderer: Renderer,
        image_store: CloudinaryImageStore,
        instagram: InstagramClient,
        notifier: Notifier,
        session_factory: Callable = get_session,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.renderer = renderer
        self.image_store = image_store
        self.instagram = instagram
        self.notifier = notifier
        self.session_factory = session_factory
        self._clock = clock

    async def handle(self, queued: QueuedJob) -> None:
        """Queue handler: the payload carries the scheduled job id."""
        await self.process(uuid.UUID(queued.payload["job_id"]), attempt=queued.attempt)

    async def process(self, job_id: uuid.UUID, attempt: int = 1) -> Optional[ScheduledJob]:
        """
        Returns the completed job, or None when the claim was lost.
        Raises JobNotFoundError for a job that no longer exists.
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        # a queue-level retry re-enters from FAILED, left there by the previous attempt,
        # or from PROCESSING when the worker holding it died; the queue's per-job lock
        # keeps a live run and its redelivery apart
        if attempt <= 1:
            from_statuses = {JobStatus.PENDING}
        else:
            from_statuses = {JobStatus.PENDING, JobStatus.FAILED, JobStatus.PROCESSING}
        claimed = await self.store.transition(job.id, from_statuses, JobStatus.PROCESSING)
        if not claimed:
            logger.info("job_claim_lost", job_id=str(job.id), attempt=attempt)
            return None
        job.status = JobStatus.PROCESSING

        bind_contextvars(job_id=str(job.id))
        try:
            logger.info("job_processing", post_type=job.post_type.value, attempt=attempt)
            try:
                post, user = await self._run_pipeline(job)
            except Exception as exc:
                await self._fail(job, exc)
                raise

            await self._notify_completed(job, post, user)
            return job
        finally:
            unbind_contextvars("job_id")

    async def _run_pipeline(self, job: ScheduledJob) -> Tuple[SourcePost, Optional[User]]:
        post, user, account = await self._load_context(job)
        if post is None:
            raise RenderError(f"Source post {job.post_id} not found")

        rendered = await self.renderer.render_post(post, job.theme)
        upload = await self.image_store.upload(rendered.data, folder=f"{UPLOAD_FOLDER}/{job.user_id}")

        patch = {
            "image_url": upload.url,
            "image_id": upload.id,
            "error_message": None,
        }

        if job.post_type == PostType.POST:
            access_token = self._usable_token(account)
            result = await self.instagram.publish_image(
                access_token,
                account.ig_user_id,
                upload.url,
                truncate_caption(post.text),
            )
            patch.update(
                media_id=result.media_id,
                permalink=result.permalink,
                published_at=self._clock(),
            )

        patch["notified_at"] = self._clock()
        moved = await self.store.transition(job.id, {JobStatus.PROCESSING}, JobStatus.COMPLETED, patch)
        if not moved:
            logger.warning("job_complete_transition_lost", job_id=str(job.id))
        for key, value in patch.items():
            setattr(job, key, value)
        job.status = JobStatus.COMPLETED

        logger.info(
            "job_completed",
            image_url=upload.url,
            media_id=patch.get("media_id"),
            permalink=patch.get("permalink"),
        )
        return post, user

    def _usable_token(self, account: Optional[InstagramAccount]) -> str:
        if account is None:
            raise ReconnectRequiredError("No Instagram account connected. Please connect your Instagram account.")
        if account.is_expired(self._clock()):
            raise ReconnectRequiredError("Instagram token expired. Please reconnect your Instagram account.")
        token = decrypt_token(account.access_token_enc)
        if not token:
            raise ReconnectRequiredError("Instagram token is unreadable. Please reconnect your Instagram account.")
        return token

    async def _load_context(
        self, job: ScheduledJob
    ) -> Tuple[Optional[SourcePost], Optional[User], Optional[InstagramAccount]]:
        async with self.session_factory() as session:
            post = await session.get(SourcePost, job.post_id)
            user = await session.get(User, job.user_id)
            account = None
            if job.post_type == PostType.POST:
                res = await session.execute(select(InstagramAccount).where(InstagramAccount.user_id == job.user_id))
                account = res.scalars().first()
        return post, user, account

    async def _fail(self, job: ScheduledJob, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        logger.error("job_failed", error=message, error_type=type(exc).__name__)
        try:
            await self.store.transition(job.id, {JobStatus.PROCESSING}, JobStatus.FAILED, {"error_message": message})
        except Exception:
            logger.exception("job_fail_transition_error")
        job.status = JobStatus.FAILED
        job.error_message = message
        await self.notifier.notify_job_failed(job, message)

    async def _notify_completed(self, job: ScheduledJob, post: SourcePost, user: Optional[User]) -> None:
        # the job is already COMPLETED; nothing here may fail it
        try:
            await self.notifier.notify_job_completed(job, post, user)
        except Exception:
            logger.exception("job_notification_error")
