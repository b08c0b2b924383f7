# src/services/job_queue.py
"""
Durable delayed job queue on Redis with a bounded worker pool.

Keys (``{prefix}`` defaults to ``queue:render``)::

    {prefix}:delayed      ZSET  job id -> fire timestamp
    {prefix}:ready        LIST  due job ids, FIFO
    {prefix}:processing   LIST  job ids leased by a worker
    {prefix}:leases       ZSET  job id -> lease deadline
    {prefix}:completed    ZSET  job id -> finish timestamp (kept 24h)
    {prefix}:failed       ZSET  job id -> finish timestamp (kept 7 days)
    {prefix}:job:{id}     HASH  payload, attempts, max_attempts, state, last_error
    {prefix}:lock:{id}    STR   per-job execution lock

Delivery is at-least-once: a job moves ready -> processing atomically, and a
lease that runs out (worker crashed before ack) sends it back to ready.  While
the handler runs, the lease and the lock are renewed every third of the lease.  The
per-job lock keeps two workers from running the same id at the same time.

Failures are retried with exponential backoff until ``max_attempts``; after
that, or for :class:`~src.exceptions.UnrecoverableJobError`, the entry lands
in the failed set.
"""
import asyncio
import json
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError
from structlog.contextvars import bind_contextvars, unbind_contextvars

from src.exceptions import UnrecoverableJobError
from src.services.rate_limiter import SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)

QUEUE_PREFIX = os.getenv("QUEUE_PREFIX", "queue:render")
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_BACKOFF_SECONDS = float(os.getenv("JOB_BACKOFF_SECONDS", "1"))
JOB_LEASE_SECONDS = float(os.getenv("JOB_LEASE_SECONDS", "300"))

KEEP_COMPLETED_SECONDS = 24 * 3600
KEEP_FAILED_SECONDS = 7 * 24 * 3600

STATE_DELAYED = "delayed"
STATE_READY = "ready"
STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

PENDING_STATES = frozenset({STATE_DELAYED, STATE_READY, STATE_ACTIVE})


@dataclass
class QueuedJob:
    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = JOB_MAX_ATTEMPTS


JobHandler = Callable[[QueuedJob], Awaitable[Any]]


def _timestamp(value: Union[datetime, float, int]) -> float:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return float(value)


class JobQueue:
    # How often the maintenance loop prunes old records (every N cycles)
    PRUNE_INTERVAL_CYCLES: int = 60
    PROMOTE_BATCH: int = 100

    def __init__(
        self,
        redis: Redis,
        handler: Optional[JobHandler] = None,
        *,
        prefix: str = QUEUE_PREFIX,
        concurrency: int = WORKER_CONCURRENCY,
        max_attempts: int = JOB_MAX_ATTEMPTS,
        backoff_seconds: float = JOB_BACKOFF_SECONDS,
        lease_seconds: float = JOB_LEASE_SECONDS,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        poll_interval: float = 0.5,
        keep_completed_seconds: float = KEEP_COMPLETED_SECONDS,
        keep_failed_seconds: float = KEEP_FAILED_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.redis = redis
        self.handler = handler
        self.prefix = prefix
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.lease_seconds = lease_seconds
        self.rate_limiter = rate_limiter
        self.poll_interval = poll_interval
        self.keep_completed_seconds = keep_completed_seconds
        self.keep_failed_seconds = keep_failed_seconds
        self._clock = clock
        self._running = False
        self._tasks: List[asyncio.Task] = []

        self.delayed_key = f"{prefix}:delayed"
        self.ready_key = f"{prefix}:ready"
        self.processing_key = f"{prefix}:processing"
        self.leases_key = f"{prefix}:leases"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _lock_key(self, job_id: str) -> str:
        return f"{self.prefix}:lock:{job_id}"

    # ================================================================
    # PRODUCER API
    # ================================================================

    async def enqueue(self, job_id: str, payload: Dict[str, Any], fire_at: Union[datetime, float]) -> None:
        """Schedule one execution of ``job_id`` at ``fire_at``, replacing any pending one."""
        fire_ts = _timestamp(fire_at)
        job_key = self._job_key(job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.ready_key, 0, job_id)
            pipe.zrem(self.completed_key, job_id)
            pipe.zrem(self.failed_key, job_id)
            pipe.delete(job_key)
            pipe.hset(
                job_key,
                mapping={
                    "payload": json.dumps(payload),
                    "attempts": 0,
                    "max_attempts": self.max_attempts,
                    "state": STATE_DELAYED,
                    "fire_at": fire_ts,
                    "created_at": self._clock(),
                },
            )
            pipe.zadd(self.delayed_key, {job_id: fire_ts})
            await pipe.execute()
        logger.info("queue_job_enqueued", queue_job_id=job_id, fire_at=fire_ts)

    async def cancel(self, job_id: str) -> bool:
        """Remove a not-yet-fired execution. Returns False if there was nothing pending."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.delayed_key, job_id)
            pipe.lrem(self.ready_key, 0, job_id)
            removed_delayed, removed_ready = await pipe.execute()
        if not (removed_delayed or removed_ready):
            return False
        await self.redis.delete(self._job_key(job_id))
        logger.info("queue_job_removed", queue_job_id=job_id)
        return True

    async def get_state(self, job_id: str) -> Optional[str]:
        return await self.redis.hget(self._job_key(job_id), "state")

    async def get_job_info(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return {
            "id": job_id,
            "state": raw.get("state"),
            "attempts": int(raw.get("attempts", 0)),
            "max_attempts": int(raw.get("max_attempts", self.max_attempts)),
            "last_error": raw.get("last_error"),
            "payload": json.loads(raw.get("payload") or "{}"),
        }

    async def stats(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.delayed_key)
            pipe.llen(self.ready_key)
            pipe.llen(self.processing_key)
            pipe.zcard(self.completed_key)
            pipe.zcard(self.failed_key)
            delayed, waiting, active, completed, failed = await pipe.execute()
        return {"delayed": delayed, "waiting": waiting, "active": active, "completed": completed, "failed": failed}

    # ================================================================
    # SCHEDULING / MAINTENANCE
    # ================================================================

    async def promote_due(self, now: Optional[float] = None) -> int:
        """Move every due delayed job to the ready list. Returns how many moved."""
        now = self._clock() if now is None else now
        moved = 0
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.delayed_key)
                    due = await pipe.zrangebyscore(self.delayed_key, "-inf", now, start=0, num=self.PROMOTE_BATCH)
                    if not due:
                        await pipe.unwatch()
                        break
                    pipe.multi()
                    pipe.zrem(self.delayed_key, *due)
                    pipe.rpush(self.ready_key, *due)
                    for job_id in due:
                        pipe.hset(self._job_key(job_id), "state", STATE_READY)
                    await pipe.execute()
                    moved += len(due)
                    if len(due) < self.PROMOTE_BATCH:
                        break
                except WatchError:
                    continue
        if moved:
            logger.debug("queue_jobs_promoted", count=moved)
        return moved

    async def reap_expired_leases(self, now: Optional[float] = None) -> int:
        """Send jobs whose worker stopped renewing the lease back to ready."""
        now = self._clock() if now is None else now
        requeued = 0
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.processing_key, self.leases_key)
                    in_flight = await pipe.lrange(self.processing_key, 0, -1)
                    expired = []
                    for job_id in in_flight:
                        deadline = await pipe.zscore(self.leases_key, job_id)
                        if deadline is None or deadline <= now:
                            expired.append(job_id)
                    if not expired:
                        await pipe.unwatch()
                        break
                    pipe.multi()
                    for job_id in expired:
                        pipe.lrem(self.processing_key, 1, job_id)
                        pipe.zrem(self.leases_key, job_id)
                        pipe.rpush(self.ready_key, job_id)
                        pipe.hset(self._job_key(job_id), "state", STATE_READY)
                    await pipe.execute()
                    requeued = len(expired)
                    break
                except WatchError:
                    continue
        if requeued:
            logger.warning("queue_leases_expired", count=requeued)
        return requeued

    async def prune(self, now: Optional[float] = None) -> int:
        """Drop finished records older than their retention window."""
        now = self._clock() if now is None else now
        removed = 0
        for key, keep in ((self.completed_key, self.keep_completed_seconds), (self.failed_key, self.keep_failed_seconds)):
            old = await self.redis.zrangebyscore(key, "-inf", now - keep)
            if not old:
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(key, *old)
                for job_id in old:
                    pipe.delete(self._job_key(job_id))
                await pipe.execute()
            removed += len(old)
        if removed:
            logger.info("queue_records_pruned", count=removed)
        return removed

    # ================================================================
    # CONSUMER
    # ================================================================

    async def process_next(self) -> Optional[QueuedJob]:
        """Lease one ready job and run the handler on it. Returns None when nothing was run."""
        if self.handler is None:
            raise RuntimeError("JobQueue has no handler")

        job_id = await self._lease_next()
        if job_id is None:
            return None

        lock_key = self._lock_key(job_id)
        lock_token = uuid.uuid4().hex
        locked = await self.redis.set(lock_key, lock_token, nx=True, px=int(self.lease_seconds * 1000))
        if not locked:
            await self._defer_locked(job_id)
            return None

        try:
            raw = await self.redis.hgetall(self._job_key(job_id))
            if not raw or "payload" not in raw:
                logger.warning("queue_job_record_missing", queue_job_id=job_id)
                await self._release_lease(job_id)
                return None

            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()

            attempt = await self.redis.hincrby(self._job_key(job_id), "attempts", 1)
            await self.redis.hset(self._job_key(job_id), "state", STATE_ACTIVE)
            await self.redis.zadd(self.leases_key, {job_id: self._clock() + self.lease_seconds})
            job = QueuedJob(
                id=job_id,
                payload=json.loads(raw["payload"]),
                attempt=attempt,
                max_attempts=int(raw.get("max_attempts", self.max_attempts)),
            )

            bind_contextvars(queue_job_id=job_id, attempt=attempt)
            heartbeat = asyncio.create_task(self._keep_leased(job_id, lock_key, lock_token))
            try:
                logger.info("queue_job_started")
                try:
                    await self.handler(job)
                except Exception as exc:
                    await self._record_failure(job, exc)
                else:
                    await self._record_success(job)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
                unbind_contextvars("queue_job_id", "attempt")
            return job
        finally:
            await self._release_lock(lock_key, lock_token)

    async def _keep_leased(self, job_id: str, lock_key: str, lock_token: str) -> None:
        # a long publish (container polling) can outlive one lease
        interval = self.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self.renew_lease(job_id, lock_key, lock_token)
            except Exception as e:
                logger.warning("queue_lease_renew_failed", queue_job_id=job_id, error=str(e))

    async def renew_lease(self, job_id: str, lock_key: str, lock_token: str) -> bool:
        """Push the lease deadline and the lock TTL forward. False if the lock is no longer ours."""
        if await self.redis.get(lock_key) != lock_token:
            return False
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.pexpire(lock_key, int(self.lease_seconds * 1000))
            pipe.zadd(self.leases_key, {job_id: self._clock() + self.lease_seconds}, xx=True)
            await pipe.execute()
        return True

    async def _lease_next(self) -> Optional[str]:
        # pop, mark in-flight and stamp the lease in one transaction
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.ready_key)
                    job_id = await pipe.lindex(self.ready_key, 0)
                    if job_id is None:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.lpop(self.ready_key)
                    pipe.rpush(self.processing_key, job_id)
                    pipe.zadd(self.leases_key, {job_id: self._clock() + self.lease_seconds})
                    await pipe.execute()
                    return job_id
                except WatchError:
                    continue

    async def _record_success(self, job: QueuedJob) -> None:
        now = self._clock()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, job.id)
            pipe.zrem(self.leases_key, job.id)
            pipe.hset(self._job_key(job.id), mapping={"state": STATE_COMPLETED, "finished_at": now})
            pipe.zadd(self.completed_key, {job.id: now})
            await pipe.execute()
        logger.info("queue_job_completed")

    async def _record_failure(self, job: QueuedJob, exc: Exception) -> None:
        now = self._clock()
        error = str(exc) or type(exc).__name__
        give_up = isinstance(exc, UnrecoverableJobError) or job.attempt >= job.max_attempts
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, job.id)
            pipe.zrem(self.leases_key, job.id)
            if give_up:
                pipe.hset(self._job_key(job.id), mapping={"state": STATE_FAILED, "last_error": error, "finished_at": now})
                pipe.zadd(self.failed_key, {job.id: now})
            else:
                delay = self.backoff_seconds * (2 ** (job.attempt - 1))
                pipe.hset(self._job_key(job.id), mapping={"state": STATE_DELAYED, "last_error": error})
                pipe.zadd(self.delayed_key, {job.id: now + delay})
            await pipe.execute()

        if give_up:
            logger.error("queue_job_failed_permanently", error=error, attempts=job.attempt)
        else:
            logger.warning("queue_job_failed_will_retry", error=error, retry_in=self.backoff_seconds * (2 ** (job.attempt - 1)))

    async def _defer_locked(self, job_id: str) -> None:
        # another worker is running this id; look again once its lock runs out
        ttl_ms = await self.redis.pttl(self._lock_key(job_id))
        retry_at = self._clock() + max(ttl_ms, 1000) / 1000.0
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, job_id)
            pipe.zrem(self.leases_key, job_id)
            pipe.hset(self._job_key(job_id), "state", STATE_DELAYED)
            pipe.zadd(self.delayed_key, {job_id: retry_at})
            await pipe.execute()
        logger.info("queue_job_locked_elsewhere", queue_job_id=job_id, retry_at=retry_at)

    async def _release_lease(self, job_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, job_id)
            pipe.zrem(self.leases_key, job_id)
            await pipe.execute()

    async def _release_lock(self, lock_key: str, token: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(lock_key)
                if await pipe.get(lock_key) != token:
                    await pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(lock_key)
                await pipe.execute()
            except WatchError:
                # lock expired and was taken by someone else meanwhile
                logger.debug("queue_lock_changed", lock_key=lock_key)

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        if self.handler is None:
            raise RuntimeError("JobQueue has no handler")
        self._running = True
        self._tasks = [asyncio.create_task(self._worker_loop(i)) for i in range(self.concurrency)]
        self._tasks.append(asyncio.create_task(self._maintenance_loop()))
        logger.info("queue_started", prefix=self.prefix, concurrency=self.concurrency)

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop taking new jobs, wait for in-flight ones, then cancel whatever is left."""
        self._running = False
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("queue_stopped", prefix=self.prefix, cancelled=len(pending))

    async def _worker_loop(self, index: int) -> None:
        while self._running:
            try:
                job = await self.process_next()
                if job is None:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception:
                # one worker's failure must not stop the pool
                logger.exception("queue_worker_error", worker=index)
                await asyncio.sleep(self.poll_interval)

    async def _maintenance_loop(self) -> None:
        cycle = 0
        while self._running:
            try:
                await self.promote_due()
                await self.reap_expired_leases()
                cycle += 1
                if cycle % self.PRUNE_INTERVAL_CYCLES == 0:
                    await self.prune()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("queue_maintenance_error")
            await asyncio.sleep(self.poll_interval)
