# src/infrastructure/database.py
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

logger = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./scheduler.db")

_engine: Optional[AsyncEngine] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(DATABASE_URL, echo=False)
    return _engine


def configure_engine(url: str, **kwargs) -> AsyncEngine:
    """Replace the process-wide engine (used by tests and the worker CLI)."""
    global _engine
    _engine = create_async_engine(url, echo=False, **kwargs)
    return _engine


async def init_db() -> None:
    # table modules must be imported so their metadata is registered
    from src.models import instagram_account, notification, post, scheduled_job, user  # noqa: F401

    try:
        async with get_engine().begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)
    except Exception as e:
        logger.exception("db_init_failed", error=str(e))
        raise


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
