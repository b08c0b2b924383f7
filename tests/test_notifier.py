"""Tests for notification fan-out."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import select

from src.infrastructure.database import get_session
from src.models.enums import JobStatus, NotificationType, PostType
from src.models.notification import Notification
from src.models.scheduled_job import ScheduledJob
from src.services.notifier import Notifier
from src.utils import utcnow


@pytest.fixture
def push():
    mock = MagicMock()
    mock.send = AsyncMock(return_value="projects/x/messages/1")
    return mock


@pytest.fixture
def email_sender():
    return AsyncMock(return_value="<id@x2ig>")


@pytest.fixture
def notifier(db, push, email_sender):
    return Notifier(push=push, email_sender=email_sender)


@pytest.fixture
async def user(make_user):
    return await make_user()


@pytest.fixture
async def post(make_post, user):
    return await make_post(user, text="z" * 80)


def finished_job(user, post, **kwargs) -> ScheduledJob:
    fields = dict(
        user_id=user.id,
        post_id=post.id,
        scheduled_for=utcnow() + timedelta(hours=1),
        status=JobStatus.COMPLETED,
        image_url="https://cdn.test/card.png",
    )
    fields.update(kwargs)
    return ScheduledJob(**fields)


async def stored_notifications(user_id):
    async with get_session() as session:
        res = await session.execute(select(Notification).where(Notification.user_id == user_id))
        return list(res.scalars().all())


class TestNotifyCompleted:
    """Tests for success notifications."""

    async def test_published_post_copy(self, notifier, push, email_sender, make_device, user, post):
        await make_device(user, "device-a")
        job = finished_job(user, post, post_type=PostType.POST, media_id="m1", permalink="https://instagram.test/p/1")

        await notifier.notify_job_completed(job, post, user)

        kwargs = push.send.await_args.kwargs
        assert kwargs["title"] == "Posted to Instagram!"
        assert kwargs["body"] == f'"{"z" * 50}..." was published to your feed'
        assert kwargs["data"] == {"postId": str(job.id), "type": "POST_PUBLISHED"}
        assert "https://instagram.test/p/1" in email_sender.await_args.kwargs["html"]
        notes = await stored_notifications(user.id)
        assert [n.type for n in notes] == [NotificationType.POST_PUBLISHED]

    async def test_story_copy(self, notifier, push, make_device, user, post):
        await make_device(user, "device-a")
        job = finished_job(user, post)

        await notifier.notify_job_completed(job, post, user)

        assert push.send.await_args.kwargs["title"] == "Your Instagram Story is Ready!"
        assert push.send.await_args.kwargs["image_url"] == "https://cdn.test/card.png"

    async def test_each_device_is_sent_individually(self, notifier, push, make_device, user, post):
        for token in ("a", "b", "c"):
            await make_device(user, token)
        push.send.side_effect = [RuntimeError("gone"), "ok", "ok"]

        await notifier.notify_job_completed(finished_job(user, post), post, user)

        assert push.send.await_count == 3

    async def test_no_email_without_address(self, notifier, email_sender, make_user, make_post):
        user = await make_user(email=None)
        post = await make_post(user)

        await notifier.notify_job_completed(finished_job(user, post), post, user)

        email_sender.assert_not_awaited()

    async def test_email_failure_still_records_notification(self, notifier, email_sender, user, post):
        email_sender.side_effect = RuntimeError("smtp down")

        await notifier.notify_job_completed(finished_job(user, post), post, user)

        assert len(await stored_notifications(user.id)) == 1

    async def test_without_push_client_only_email_and_record(self, db, email_sender, user, post):
        notifier = Notifier(push=None, email_sender=email_sender)

        await notifier.notify_job_completed(finished_job(user, post), post, user)

        email_sender.assert_awaited_once()
        assert len(await stored_notifications(user.id)) == 1


class TestNotifyFailed:
    async def test_single_failure_record(self, notifier, push, email_sender, user, post):
        job = finished_job(user, post, status=JobStatus.FAILED, image_url=None)

        await notifier.notify_job_failed(job, "Upload failed")

        notes = await stored_notifications(user.id)
        assert len(notes) == 1
        assert notes[0].type == NotificationType.POST_FAILED
        assert "Upload failed" in notes[0].body
        assert notes[0].job_id == job.id
        push.send.assert_not_awaited()
        email_sender.assert_not_awaited()

    async def test_record_failure_is_swallowed(self, user, post):
        def broken_session():
            raise RuntimeError("db down")

        notifier = Notifier(session_factory=broken_session)

        assert await notifier.record(user.id, NotificationType.REMINDER, "t", "b") is None
