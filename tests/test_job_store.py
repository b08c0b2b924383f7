"""Tests for the ScheduledJob persistence boundary.

Validates:
- one active job per (user, post), both in the store and at the storage layer
- conditional transitions: exactly one concurrent claim wins
- cancel rules: anything but PROCESSING can be deleted
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from src.exceptions import ConflictError, InvalidStateError, JobNotFoundError
from src.infrastructure.database import get_session
from src.models.enums import JobStatus, PostType
from src.models.scheduled_job import ScheduledJob, active_key_for
from src.services.job_store import JobStore
from src.utils import utcnow


@pytest.fixture
def store(db):
    return JobStore()


@pytest.fixture
async def owner(make_user, make_post):
    user = await make_user()
    post = await make_post(user)
    return user, post


def new_job(user, post, **kwargs) -> ScheduledJob:
    return ScheduledJob(
        user_id=user.id,
        post_id=post.id,
        scheduled_for=utcnow() + timedelta(hours=1),
        **kwargs,
    )


# =============================================================================
# create
# =============================================================================


class TestCreate:
    """Tests for JobStore.create."""

    async def test_create_persists_pending_job(self, store, owner):
        """A new job is stored as PENDING with its active key set."""
        user, post = owner
        job = await store.create(new_job(user, post))

        stored = await store.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.active_key == active_key_for(user.id, post.id)

    async def test_second_active_job_for_same_post_is_rejected(self, store, owner):
        """Only one PENDING/PROCESSING job may exist per (user, post)."""
        user, post = owner
        await store.create(new_job(user, post))

        with pytest.raises(ConflictError):
            await store.create(new_job(user, post, post_type=PostType.POST))

    async def test_finished_job_does_not_block_a_new_one(self, store, owner):
        """After the active job completes, the post can be scheduled again."""
        user, post = owner
        first = await store.create(new_job(user, post))
        await store.transition(first.id, {JobStatus.PENDING}, JobStatus.PROCESSING)
        await store.transition(first.id, {JobStatus.PROCESSING}, JobStatus.COMPLETED)

        second = await store.create(new_job(user, post))
        assert second.id != first.id

    async def test_concurrent_creates_leave_one_active_job(self, store, owner):
        """Racing creates for the same post produce exactly one row."""
        user, post = owner
        results = await asyncio.gather(
            store.create(new_job(user, post)),
            store.create(new_job(user, post)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, ScheduledJob)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 1
        assert len(await store.list_for_user(user.id)) == 1

    async def test_unique_active_key_is_enforced_by_the_database(self, store, owner):
        """Bypassing the store still cannot create two active rows for one post."""
        user, post = owner
        await store.create(new_job(user, post))

        duplicate = new_job(user, post, active_key=active_key_for(user.id, post.id))
        with pytest.raises(IntegrityError):
            async with get_session() as session:
                session.add(duplicate)
                await session.commit()


# =============================================================================
# transition
# =============================================================================


class TestTransition:
    """Tests for the conditional status update."""

    async def test_claim_succeeds_once(self, store, owner):
        """PENDING -> PROCESSING succeeds the first time and fails the second."""
        user, post = owner
        job = await store.create(new_job(user, post))

        assert await store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING) is True
        assert await store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING) is False
        assert (await store.get(job.id)).status == JobStatus.PROCESSING

    async def test_concurrent_claims_have_exactly_one_winner(self, store, owner):
        """Two workers claiming the same job: exactly one sees True."""
        user, post = owner
        job = await store.create(new_job(user, post))

        results = await asyncio.gather(
            store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING),
            store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING),
        )

        assert sorted(results) == [False, True]

    async def test_patch_is_applied_with_the_status(self, store, owner):
        """Patch fields are written in the same update."""
        user, post = owner
        job = await store.create(new_job(user, post))
        await store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING)

        moved = await store.transition(
            job.id, {JobStatus.PROCESSING}, JobStatus.FAILED, {"error_message": "upload failed"}
        )

        stored = await store.get(job.id)
        assert moved is True
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "upload failed"
        assert stored.active_key is None

    async def test_failed_guard_leaves_row_untouched(self, store, owner):
        """A transition whose guard fails changes nothing."""
        user, post = owner
        job = await store.create(new_job(user, post))

        moved = await store.transition(
            job.id, {JobStatus.PROCESSING}, JobStatus.COMPLETED, {"image_url": "https://cdn.example/x.png"}
        )

        stored = await store.get(job.id)
        assert moved is False
        assert stored.status == JobStatus.PENDING
        assert stored.image_url is None

    async def test_missing_job_returns_false(self, store, db):
        assert await store.transition(uuid.uuid4(), {JobStatus.PENDING}, JobStatus.PROCESSING) is False

    async def test_reactivation_conflicts_with_newer_active_job(self, store, owner):
        """FAILED -> PENDING is refused while another job for the post is active."""
        user, post = owner
        old = await store.create(new_job(user, post))
        await store.transition(old.id, {JobStatus.PENDING}, JobStatus.PROCESSING)
        await store.transition(old.id, {JobStatus.PROCESSING}, JobStatus.FAILED)
        await store.create(new_job(user, post))

        with pytest.raises(ConflictError):
            await store.transition(old.id, {JobStatus.FAILED}, JobStatus.PENDING)


# =============================================================================
# cancel / queries
# =============================================================================


class TestCancel:
    """Tests for JobStore.cancel."""

    @pytest.mark.parametrize("final_status", [JobStatus.COMPLETED, JobStatus.FAILED])
    async def test_finished_jobs_can_be_cancelled(self, store, owner, final_status):
        user, post = owner
        job = await store.create(new_job(user, post))
        await store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING)
        await store.transition(job.id, {JobStatus.PROCESSING}, final_status)

        await store.cancel(job.id)

        assert await store.get(job.id) is None

    async def test_pending_job_is_deleted(self, store, owner):
        user, post = owner
        job = await store.create(new_job(user, post))

        await store.cancel(job.id)

        assert await store.get(job.id) is None

    async def test_processing_job_cannot_be_cancelled(self, store, owner):
        """Cancelling a PROCESSING job raises and leaves it PROCESSING."""
        user, post = owner
        job = await store.create(new_job(user, post))
        await store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING)

        with pytest.raises(InvalidStateError):
            await store.cancel(job.id)

        assert (await store.get(job.id)).status == JobStatus.PROCESSING

    async def test_missing_job_raises_not_found(self, store, db):
        with pytest.raises(JobNotFoundError):
            await store.cancel(uuid.uuid4())


class TestQueries:
    """Tests for list_for_user and list_pending."""

    async def test_list_for_user_filters_by_status(self, store, make_user, make_post):
        user = await make_user()
        first = await store.create(new_job(user, await make_post(user)))
        await store.create(new_job(user, await make_post(user)))
        await store.transition(first.id, {JobStatus.PENDING}, JobStatus.PROCESSING)

        assert len(await store.list_for_user(user.id)) == 2
        processing = await store.list_for_user(user.id, JobStatus.PROCESSING)
        assert [j.id for j in processing] == [first.id]

    async def test_list_pending_only_returns_pending(self, store, owner):
        user, post = owner
        job = await store.create(new_job(user, post))
        assert [j.id for j in await store.list_pending()] == [job.id]

        await store.transition(job.id, {JobStatus.PENDING}, JobStatus.PROCESSING)
        assert await store.list_pending() == []

    async def test_require_raises_for_missing_job(self, store, db):
        with pytest.raises(JobNotFoundError):
            await store.require(uuid.uuid4())
