# src/main.py
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
import structlog

from src.routers.schedule_router import router as schedule_router
from src.routers.post_router import router as post_router
from src.routers.notification_router import router as notification_router
from src.routers.health_router import router as health_router
from src.infrastructure.database import dispose_engine, init_db
from src.infrastructure.log_config import configure_structlog
from src.infrastructure.redis_cache import close_redis
from src.middleware.logging import RequestIdMiddleware

configure_structlog()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("app_startup")
    yield
    await close_redis()
    await dispose_engine()
    logger.info("app_shutdown")


app = FastAPI(title="Post Scheduler", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.include_router(schedule_router)
app.include_router(post_router)
app.include_router(notification_router)
app.include_router(health_router)

if __name__ == "__main__":
    uvicorn.run("src.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)), reload=True)
