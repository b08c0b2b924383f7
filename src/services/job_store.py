# src/services/job_store.py
"""
Persistence boundary for scheduled jobs.

Every status change goes through :meth:`JobStore.transition`, a single
conditional ``UPDATE ... WHERE id = :id AND status IN (...)``.  The row count
of that statement is the only thing that decides who owns a job, so two
workers racing on the same id can never both see ``True``.

The "one active job per (user, post)" rule is enforced twice: a lookup before
insert gives a clean error message, and the UNIQUE ``active_key`` column
closes the check-then-insert race.
"""
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from src.exceptions import ConflictError, InvalidStateError, JobNotFoundError
from src.infrastructure.database import get_session
from src.models.enums import ACTIVE_STATUSES, JobStatus
from src.models.scheduled_job import ScheduledJob, active_key_for
from src.utils import utcnow

logger = structlog.get_logger(__name__)


class JobStore:
    """
    Repository for ScheduledJob rows.
    Each method opens its own session so the store can be shared by concurrent workers.
    """

    def __init__(self, session_factory: Callable = get_session):
        self.session_factory = session_factory

    async def create(self, job: ScheduledJob) -> ScheduledJob:
        async with self.session_factory() as session:
            q = select(ScheduledJob).where(
                ScheduledJob.user_id == job.user_id,
                ScheduledJob.post_id == job.post_id,
                ScheduledJob.status.in_(list(ACTIVE_STATUSES)),
            )
            res = await session.execute(q)
            if res.scalars().first() is not None:
                raise ConflictError("post already has an active scheduled job")

            job.status = JobStatus.PENDING
            job.active_key = active_key_for(job.user_id, job.post_id)
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("job_create_race_lost", user_id=str(job.user_id), post_id=str(job.post_id))
                raise ConflictError("post already has an active scheduled job")
            await session.refresh(job)
            logger.info("job_created", job_id=str(job.id), user_id=str(job.user_id), post_type=job.post_type.value)
            return job

    async def get(self, job_id: uuid.UUID) -> Optional[ScheduledJob]:
        async with self.session_factory() as session:
            return await session.get(ScheduledJob, job_id)

    async def require(self, job_id: uuid.UUID) -> ScheduledJob:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def transition(
        self,
        job_id: uuid.UUID,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a job to ``to_status`` only if its current status is in ``from_statuses``.
        Returns False when the guard fails (job missing or already moved by someone else).
        Raises ConflictError when re-activating would break the one-active-job-per-post rule.
        """
        from_statuses = list(from_statuses)
        async with self.session_factory() as session:
            current = await session.get(ScheduledJob, job_id)
            if current is None:
                return False

            values = dict(patch or {})
            values["status"] = to_status
            values["active_key"] = (
                active_key_for(current.user_id, current.post_id) if to_status in ACTIVE_STATUSES else None
            )
            values["updated_at"] = utcnow()

            stmt = (
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id, ScheduledJob.status.in_(from_statuses))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            try:
                res = await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError("post already has an active scheduled job")

        moved = res.rowcount == 1
        logger.debug(
            "job_transition",
            job_id=str(job_id),
            to_status=to_status.value,
            from_statuses=[s.value for s in from_statuses],
            moved=moved,
        )
        return moved

    async def cancel(self, job_id: uuid.UUID) -> None:
        """Delete a job unless it is PROCESSING."""
        async with self.session_factory() as session:
            stmt = (
                delete(ScheduledJob)
                .where(ScheduledJob.id == job_id, ScheduledJob.status != JobStatus.PROCESSING)
                .execution_options(synchronize_session=False)
            )
            res = await session.execute(stmt)
            await session.commit()
            if res.rowcount == 1:
                logger.info("job_cancelled", job_id=str(job_id))
                return

            current = await session.get(ScheduledJob, job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise InvalidStateError("cannot cancel a job that is currently processing")

    async def list_for_user(self, user_id: uuid.UUID, status: Optional[JobStatus] = None) -> List[ScheduledJob]:
        async with self.session_factory() as session:
            q = select(ScheduledJob).where(ScheduledJob.user_id == user_id)
            if status is not None:
                q = q.where(ScheduledJob.status == status)
            q = q.order_by(ScheduledJob.scheduled_for)
            res = await session.execute(q)
            return list(res.scalars().all())

    async def list_pending(self) -> List[ScheduledJob]:
        async with self.session_factory() as session:
            q = select(ScheduledJob).where(ScheduledJob.status == JobStatus.PENDING).order_by(ScheduledJob.scheduled_for)
            res = await session.execute(q)
            return list(res.scalars().all())
