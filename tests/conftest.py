"""Shared fixtures for the post scheduler test suite."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Optional

import fakeredis.aioredis
import pytest

from src.infrastructure.database import configure_engine, dispose_engine, get_session, init_db
from src.infrastructure.redis_cache import set_redis
from src.models.instagram_account import InstagramAccount
from src.models.notification import DeviceToken
from src.models.post import SourcePost
from src.models.user import User
from src.utils import encrypt_token, utcnow


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear credentials so no client ever talks to a real API."""
    for key in [
        "CLOUDINARY_CLOUD_NAME",
        "CLOUDINARY_API_KEY",
        "CLOUDINARY_API_SECRET",
        "FCM_PROJECT_ID",
        "FCM_ACCESS_TOKEN",
        "SMTP_HOST",
        "SMTP_USER",
        "SMTP_PASSWORD",
    ]:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
@pytest.fixture
async def db(tmp_path):
    """A fresh file-backed SQLite database with all tables created."""
    engine = configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db()
    yield engine
    await dispose_engine()


@pytest.fixture
async def redis():
    """An in-memory Redis with string responses, like the production client."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    set_redis(client)
    yield client
    set_redis(None)
    await client.flushall()
    await client.aclose()



# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------
class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_750_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------
async def _save(obj):
    async with get_session() as session:
        session.add(obj)
        await session.commit()
        await session.refresh(obj)
    return obj


@pytest.fixture
def make_user(db):
    async def factory(email: Optional[str] = "user@example.com", username: Optional[str] = None) -> User:
        return await _save(User(email=email, username=username or f"user_{uuid.uuid4().hex[:8]}"))

    return factory


@pytest.fixture
def make_post(db):
    async def factory(user: User, text: str = "Shipping the new release today!", **kwargs) -> SourcePost:
        fields = dict(
            user_id=user.id,
            text=text,
            author_name="Jane Doe",
            author_username="janedoe",
            posted_at=datetime(2025, 6, 1, 10, 30),
        )
        fields.update(kwargs)
        return await _save(SourcePost(**fields))

    return factory


@pytest.fixture
def make_account(db):
    async def factory(user: User, expires_in: timedelta = timedelta(days=30), token: str = "ig-token") -> InstagramAccount:
        return await _save(
            InstagramAccount(
                user_id=user.id,
                ig_user_id="17841400000000000",
                username="janedoe.ig",
                access_token_enc=encrypt_token(token),
                token_expires_at=utcnow() + expires_in,
            )
        )

    return factory


@pytest.fixture
def make_device(db):
    async def factory(user: User, token: str) -> DeviceToken:
        return await _save(DeviceToken(user_id=user.id, token=token))

    return factory
