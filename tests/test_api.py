"""Tests for the HTTP surface: routing, auth wiring and error mapping."""

import uuid
from datetime import timedelta

import httpx
import pytest
from jose import jwt

from src.dependencies import auth as auth_module
from src.dependencies.auth import get_current_user
from src.dependencies.services import get_job_queue, get_schedule_service
from src.main import app
from src.models.enums import JobStatus
from src.services.job_queue import JobQueue
from src.services.job_store import JobStore
from src.services.schedule_service import ScheduleService
from src.utils import utcnow


@pytest.fixture
async def user(make_user):
    return await make_user()


@pytest.fixture
def queue(redis):
    return JobQueue(redis, prefix="test:api")


@pytest.fixture
async def client(db, user, queue):
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_schedule_service] = lambda: ScheduleService(JobStore(), queue)
    app.dependency_overrides[get_job_queue] = lambda: queue
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def future(hours=1) -> str:
    return (utcnow() + timedelta(hours=hours)).isoformat()


class TestScheduleEndpoints:
    """Tests for /schedule."""

    async def test_create_and_list(self, client, make_post, user):
        post = await make_post(user)

        created = await client.post("/schedule/", json={"post_ids": [str(post.id)], "scheduled_for": future()})
        listed = await client.get("/schedule/", params={"status": "PENDING"})

        assert created.status_code == 201
        assert created.json()["message"] == "Scheduled 1 post(s)"
        assert [j["post_id"] for j in listed.json()] == [str(post.id)]
        assert created.headers["x-request-id"]

    async def test_past_time_is_400(self, client, make_post, user):
        post = await make_post(user)

        resp = await client.post(
            "/schedule/", json={"post_ids": [str(post.id)], "scheduled_for": (utcnow() - timedelta(hours=1)).isoformat()}
        )

        assert resp.status_code == 400

    async def test_duplicate_is_409(self, client, make_post, user):
        post = await make_post(user)
        body = {"post_ids": [str(post.id)], "scheduled_for": future()}
        await client.post("/schedule/", json=body)

        resp = await client.post("/schedule/", json=body)

        assert resp.status_code == 409

    async def test_cancel_processing_is_400(self, client, make_post, user):
        post = await make_post(user)
        created = await client.post("/schedule/", json={"post_ids": [str(post.id)], "scheduled_for": future()})
        job_id = created.json()["jobs"][0]["id"]
        await JobStore().transition(uuid.UUID(job_id), {JobStatus.PENDING}, JobStatus.PROCESSING)

        resp = await client.delete(f"/schedule/{job_id}")

        assert resp.status_code == 400
        assert "processing" in resp.json()["detail"]

    async def test_unknown_job_is_404(self, client):
        resp = await client.post("/schedule/00000000-0000-0000-0000-000000000000/retry")
        assert resp.status_code == 404


class TestHealth:
    async def test_health_reports_queue_stats(self, client):
        resp = await client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["database"] == "ok"
        assert body["queue"]["delayed"] == 0

    async def test_default_queue_uses_shared_redis(self, db, redis, user):
        app.dependency_overrides[get_current_user] = lambda: user
        try:
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
                resp = await c.get("/health")
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 200
        assert resp.json()["redis"] == "ok"


class TestNotificationsEndpoints:
    async def test_register_device_and_list(self, client):
        registered = await client.post("/notifications/devices", json={"token": "device-1"})
        listed = await client.get("/notifications/")

        assert registered.status_code == 200
        assert listed.json() == {"notifications": [], "unread_count": 0}


class TestAuth:
    """Tests for bearer token verification without overrides."""

    async def test_valid_token_resolves_user(self, db, user):
        token = jwt.encode({"sub": str(user.id)}, auth_module.SECRET_KEY, algorithm=auth_module.ALGORITHM)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.get("/notifications/", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 200

    async def test_bad_token_is_401(self, db):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.get("/notifications/", headers={"Authorization": "Bearer not-a-jwt"})

        assert resp.status_code == 401
