# src/routers/health_router.py
import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from src.dependencies.db import get_session_dep
from src.dependencies.services import get_job_queue
from src.services.job_queue import JobQueue
from src.utils import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: AsyncSession = Depends(get_session_dep), queue: JobQueue = Depends(get_job_queue)):
    body = {"status": "ok", "time": utcnow().isoformat(), "database": "ok", "redis": "ok", "queue": None}

    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("health_database_failed", error=str(e))
        body["database"] = "error"

    try:
        await queue.redis.ping()
        body["queue"] = await queue.stats()
    except Exception as e:
        logger.warning("health_redis_failed", error=str(e))
        body["redis"] = "error"

    if body["database"] != "ok" or body["redis"] != "ok":
        body["status"] = "degraded"
        return JSONResponse(status_code=503, content=body)
    return body
