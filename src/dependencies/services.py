# src/dependencies/services.py
from src.infrastructure.image_store import CloudinaryImageStore
from src.infrastructure.redis_cache import get_redis
from src.services.job_queue import JobQueue
from src.services.job_store import JobStore
from src.services.renderer import Renderer
from src.services.schedule_service import ScheduleService


def get_job_queue() -> JobQueue:
    # producer side only; workers run in src.worker
    return JobQueue(get_redis())


def get_schedule_service() -> ScheduleService:
    return ScheduleService(JobStore(), get_job_queue(), image_store=CloudinaryImageStore())


def get_renderer() -> Renderer:
    return Renderer()
