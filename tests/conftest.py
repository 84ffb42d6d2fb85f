"""
Shared fixtures for the taskboard test-suite.

Service-level tests run against a throwaway SQLite file (aiosqlite) and an
in-memory ephemeral store driven by a fake clock. API tests build the real
application with ``create_app`` and drive it through Starlette's TestClient.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import pytest
from fastapi.testclient import TestClient

from taskboard.cache.layer import MemoryStore, RedisStore
from taskboard.cache.query_cache import QueryCache
from taskboard.core.config import Settings
from taskboard.database import build_engine, build_session_factory, create_db_and_tables
from taskboard.main import create_app
from taskboard.models import User
from taskboard.schemas import SessionUser
from taskboard.services.events import EventHub
from taskboard.services.star_service import StarService
from taskboard.services.task_queries import TaskQueryEngine
from taskboard.services.task_service import TaskService


# -----------------------------------------------------------------------------
# Clocks & recording doubles
# -----------------------------------------------------------------------------
class FakeTimer:
    """Monotonic seconds that only move when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClock:
    """Wall-clock UTC datetimes that only move when told to."""

    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingConnection:
    """Stands in for a WebSocket; keeps every message it is sent."""

    def __init__(self, connection_id: str, fail: bool = False):
        self.id = connection_id
        self.messages: list[dict] = []
        self.closed_with: int | None = None
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.messages.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


@pytest.fixture
def fake_timer():
    return FakeTimer()


@pytest.fixture
def fake_clock():
    return FakeClock()


# -----------------------------------------------------------------------------
# Ephemeral stores
# -----------------------------------------------------------------------------
@pytest.fixture
async def memory_store(fake_timer):
    store = MemoryStore(maxsize=1000, sweep_interval=3600, timer=fake_timer)
    yield store
    await store.close()


@pytest.fixture
async def redis_store():
    store = RedisStore(fakeredis.aioredis.FakeRedis(decode_responses=True), namespace="test:")
    yield store
    await store.close()


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------
@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskboard.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def _make_user(db, name: str, email: str) -> SessionUser:
    user = User(name=name, email=email, password_hash=None)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return SessionUser(id=user.id, email=user.email, name=user.name)


@pytest.fixture
async def alice(db):
    return await _make_user(db, "Alice", "alice@example.com")


@pytest.fixture
async def bob(db):
    return await _make_user(db, "Bob", "bob@example.com")


# -----------------------------------------------------------------------------
# Services
# -----------------------------------------------------------------------------
@pytest.fixture
async def hub():
    hub = EventHub(queue_size=100)
    await hub.start()
    yield hub
    await hub.shutdown()


@pytest.fixture
def query_cache(memory_store):
    return QueryCache(memory_store, ttl_seconds=300)


@pytest.fixture
def task_service(memory_store, query_cache, hub):
    return TaskService(memory_store, query_cache, hub, undo_ttl_seconds=600)


@pytest.fixture
def star_service(query_cache, hub):
    return StarService(query_cache, hub)


@pytest.fixture
def task_queries(query_cache):
    return TaskQueryEngine(query_cache)


async def drain(hub: EventHub) -> None:
    """Let the dispatcher deliver everything queued so far."""
    await asyncio.wait_for(hub.join(), timeout=2)


# -----------------------------------------------------------------------------
# HTTP application
# -----------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        redis_disabled=True,
        bcrypt_rounds=4,
        password_pepper="test-pepper",
        rate_limit_max_requests=1000,
        rate_limit_auth_max_requests=1000,
        rate_limit_login_max_requests=1000,
        rate_limit_search_max_requests=1000,
        rate_limit_task_max_requests=1000,
        rate_limit_write_max_requests=1000,
        rate_limit_star_max_requests=1000,
        rate_limit_me_max_requests=1000,
        rate_limit_export_max_requests=1000,
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


def signup(client: TestClient, name: str, email: str, password: str = "Secret123") -> dict:
    """
    Register a user and return the headers that authenticate as them.

    The session cookie is dropped so several users can share one client;
    each request carries its own Bearer token instead.
    """
    response = client.post(
        "/auth/signup",
        json={"name": name, "email": email, "password": password, "confirmPassword": password},
    )
    assert response.status_code == 201, response.text
    body = response.json()
    client.cookies.clear()
    return {
        "Authorization": f"Bearer {body['data']['sessionToken']}",
        "X-CSRF-Token": body["csrfToken"],
        "_user_id": body["data"]["user"]["id"],
    }


def auth_headers(user: dict) -> dict:
    return {k: v for k, v in user.items() if not k.startswith("_")}
