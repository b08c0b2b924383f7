# src/worker.py
"""
Background worker: runs the render queue and the daily token refresh sweep.

Run separately from the API::

    python -m src.worker
"""
import asyncio
import os
import signal
from contextlib import suppress

import structlog

from src.infrastructure.database import dispose_engine, init_db
from src.infrastructure.image_store import CloudinaryImageStore
from src.infrastructure.instagram_client import InstagramClient
from src.infrastructure.log_config import configure_structlog
from src.infrastructure.push_client import FcmPushClient
from src.infrastructure.redis_cache import close_redis, get_redis
from src.services.job_processor import JobProcessor
from src.services.job_queue import JobQueue
from src.services.job_store import JobStore
from src.services.notifier import Notifier
from src.services.rate_limiter import SlidingWindowRateLimiter
from src.services.renderer import Renderer
from src.services.schedule_service import ScheduleService
from src.services.token_refresh import TokenRefresher

logger = structlog.get_logger("worker")

TOKEN_REFRESH_INTERVAL_SECONDS = float(os.getenv("TOKEN_REFRESH_INTERVAL_SECONDS", str(24 * 3600)))
SHUTDOWN_TIMEOUT_SECONDS = float(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "30"))


async def token_refresh_loop(refresher: TokenRefresher, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            await refresher.refresh_expiring_tokens()
        except Exception:
            logger.exception("token_refresh_sweep_failed")
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=TOKEN_REFRESH_INTERVAL_SECONDS)


async def main() -> None:
    configure_structlog()
    await init_db()

    redis = get_redis()
    store = JobStore()
    instagram = InstagramClient()
    notifier = Notifier(push=FcmPushClient())
    processor = JobProcessor(
        store=store,
        renderer=Renderer(),
        image_store=CloudinaryImageStore(),
        instagram=instagram,
        notifier=notifier,
    )
    # one limiter instance for the whole pool
    queue = JobQueue(redis, processor.handle, rate_limiter=SlidingWindowRateLimiter(redis))

    requeued = await ScheduleService(store, queue).requeue_pending()
    logger.info("worker_starting", concurrency=queue.concurrency, requeued=requeued)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await queue.start()
    refresh_task = asyncio.create_task(token_refresh_loop(TokenRefresher(instagram, notifier), stop))
    try:
        await stop.wait()
    finally:
        logger.info("worker_stopping")
        await queue.stop(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await refresh_task
        await close_redis()
        await dispose_engine()
        logger.info("worker_stopped")


if __name__ == "__main__":
    asyncio.run(main())
