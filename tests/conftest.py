import asyncio
import os
import uuid
from pathlib import Path

# Configure the app for tests BEFORE importing it
TEST_DB = Path(__file__).parent.parent / "test_tasks.db"
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB}"
os.environ["REDIS_DSN"] = ""
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["DB_RETRY_ATTEMPTS"] = "1"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.database import async_session
from app.main import app
from app.models import Task, User

API = "/api/v1"
PASSWORD = "password123"


@pytest.fixture(autouse=True)
def fresh_database():
    """Each test starts from an empty database; tables are created by the app lifespan."""
    TEST_DB.unlink(missing_ok=True)
    yield
    TEST_DB.unlink(missing_ok=True)


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        redis_dsn=None,
        l1_ttl_seconds=60,
        l2_ttl_seconds=300,
    )


def register(client, role="user", name="Test User", email=None, password=PASSWORD):
    email = email or f"user_{uuid.uuid4().hex[:8]}@example.com"
    response = client.post(
        f"{API}/auth/register",
        json={
            "name": name,
            "email": email,
            "password": password,
            "confirmPassword": password,
            "role": role,
        },
    )
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    # bearer auth only; keep the cookie jar out of the picture
    client.cookies.clear()
    return {"id": data["user"]["id"], "email": email, "token": data["token"]}


def auth_header(user) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


def create_task(client, creator, assignee, **fields):
    body = {"title": "Fix bug", "assignedTo": assignee["id"], **fields}
    response = client.post(f"{API}/tasks", json=body, headers=auth_header(creator))
    assert response.status_code == 201, response.text
    return response.json()["data"]["task"]


def set_user_active(user_id: int, active: bool):
    async def _update():
        async with async_session() as db:
            user = await db.get(User, user_id)
            user.is_active = active
            await db.commit()

    asyncio.run(_update())


def set_task_fields(task_id: int, **fields):
    async def _update():
        async with async_session() as db:
            task = await db.get(Task, task_id)
            for field, value in fields.items():
                setattr(task, field, value)
            await db.commit()

    asyncio.run(_update())


@pytest.fixture
def manager(client):
    return register(client, role="manager", name="Alice Manager")


@pytest.fixture
def member(client):
    return register(client, name="Bob Member")
