# src/services/notifier.py
"""
Best-effort fan-out of job outcomes.

Every channel is independent: one device token failing does not stop the
others, and nothing raised here ever reaches the job that triggered it.
"""
import uuid
from typing import Awaitable, Callable, List, Optional, Protocol

import structlog
from sqlmodel import select

from src.infrastructure.database import get_session
from src.infrastructure.email import render_post_email, send_email
from src.models.enums import NotificationType
from src.models.notification import DeviceToken, Notification
from src.models.post import SourcePost
from src.models.scheduled_job import ScheduledJob
from src.models.user import User

logger = structlog.get_logger(__name__)

PREVIEW_CHARS = 50


class PushSender(Protocol):
    async def send(self, token: str, title: str, body: str, image_url: Optional[str] = None, data: Optional[dict] = None) -> Optional[str]:
        ...


EmailSender = Callable[..., Awaitable[Optional[str]]]


def _preview(text: str) -> str:
    return text if len(text) <= PREVIEW_CHARS else f"{text[:PREVIEW_CHARS]}..."


class Notifier:
    def __init__(
        self,
        push: Optional[PushSender] = None,
        email_sender: EmailSender = send_email,
        session_factory: Callable = get_session,
    ):
        self.push = push
        self.email_sender = email_sender
        self.session_factory = session_factory

    async def notify_job_completed(self, job: ScheduledJob, post: SourcePost, user: Optional[User]) -> None:
        published = job.media_id is not None
        if published:
            kind = NotificationType.POST_PUBLISHED
            title = "Posted to Instagram!"
            body = f'"{_preview(post.text)}" was published to your feed'
            record_title, record_body = "Post Published", "Your post was published to Instagram"
        else:
            kind = NotificationType.POST_READY
            title = "Your Instagram Story is Ready!"
            body = f'Screenshot for "{_preview(post.text)}" is ready to post'
            record_title, record_body = "Story Ready", "Your screenshot is ready to post on Instagram"

        await self._push_all(job.user_id, title, body, job.image_url, {"postId": str(job.id), "type": kind.value})

        if user is not None and user.email:
            try:
                await self.email_sender(
                    to_email=user.email,
                    subject=title,
                    plain_text=f"{body}\n\n{job.permalink or job.image_url}",
                    html=render_post_email(post.text, job.image_url or "", published, job.permalink),
                )
            except Exception as exc:
                logger.warning("email_notification_failed", job_id=str(job.id), error=str(exc))

        await self.record(job.user_id, kind, record_title, record_body, image_url=job.image_url, job_id=job.id)

    async def notify_job_failed(self, job: ScheduledJob, error_message: str) -> None:
        await self.record(
            job.user_id,
            NotificationType.POST_FAILED,
            "Post Failed",
            f"Failed to prepare your Instagram {job.post_type.value.lower()}: {error_message}",
            job_id=job.id,
        )

    async def record(
        self,
        user_id: uuid.UUID,
        kind: NotificationType,
        title: str,
        body: str,
        image_url: Optional[str] = None,
        job_id: Optional[uuid.UUID] = None,
    ) -> Optional[Notification]:
        note = Notification(user_id=user_id, type=kind, title=title, body=body, image_url=image_url, job_id=job_id)
        try:
            async with self.session_factory() as session:
                session.add(note)
                await session.commit()
                await session.refresh(note)
        except Exception as exc:
            logger.warning("notification_record_failed", user_id=str(user_id), type=kind.value, error=str(exc))
            return None
        return note

    async def _device_tokens(self, user_id: uuid.UUID) -> List[str]:
        async with self.session_factory() as session:
            res = await session.execute(select(DeviceToken.token).where(DeviceToken.user_id == user_id))
            return list(res.scalars().all())

    async def _push_all(self, user_id: uuid.UUID, title: str, body: str, image_url: Optional[str], data: dict) -> int:
        if self.push is None:
            return 0
        try:
            tokens = await self._device_tokens(user_id)
        except Exception as exc:
            logger.warning("device_token_lookup_failed", user_id=str(user_id), error=str(exc))
            return 0

        sent = 0
        for token in tokens:
            try:
                await self.push.send(token=token, title=title, body=body, image_url=image_url, data=data)
                sent += 1
            except Exception as exc:
                logger.warning("push_notification_failed", user_id=str(user_id), error=str(exc))
        return sent
