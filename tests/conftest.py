"""
Shared fixtures.

The store is a throwaway SQLite file per test (aiosqlite). Redis and Kafka
are replaced by in-memory fakes that record every call, so tests can assert
on invalidated keys and published events.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("IDENTITY_SYNC_ENABLED", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("SERVICE_TOKEN_SECRET", "test-service-secret")

from datetime import datetime  # noqa: E402
from typing import Any, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.clients.redis_client import get_profile_cache  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Follow, User  # noqa: E402
from app.services.follow_orchestrator import FollowOrchestrator, get_follow_orchestrator  # noqa: E402
from app.tasks import BackgroundTaskSupervisor  # noqa: E402


class FakeCache:
    """Stands in for ProfileCache; `fail_keys` makes invalidate raise for those keys."""

    def __init__(self) -> None:
        self.invalidated: list[str] = []
        self.fail_keys: set[str] = set()
        self.profiles: dict[str, dict] = {}
        self.pages: dict[str, dict[str, dict]] = {}
        self.generations: dict[str, int] = {}

    async def invalidate(self, key: str) -> None:
        self.invalidated.append(key)
        if key in self.fail_keys:
            raise ConnectionError(f"redis down for {key}")
        self.generations[key] = self.generations.get(key, 0) + 1
        self.pages.pop(key, None)
        if key.startswith("user:profile:"):
            self.profiles.pop(key.rsplit(":", 1)[1], None)

    async def get_profile(self, user_id: str) -> Optional[dict]:
        return self.profiles.get(user_id)

    async def set_profile(self, user_id: str, profile: dict) -> None:
        self.profiles[user_id] = profile

    async def get_page(self, key: str, page: int, limit: int) -> Optional[dict]:
        return self.pages.get(key, {}).get(f"{page}:{limit}")

    async def page_generation(self, key: str) -> Optional[str]:
        return str(self.generations.get(key, 0))

    async def set_page(
        self, key: str, page: int, limit: int, body: dict, generation: Optional[str]
    ) -> None:
        if generation != str(self.generations.get(key, 0)):
            return
        self.pages.setdefault(key, {})[f"{page}:{limit}"] = body


class FakePublisher:
    """Stands in for EventPublisher; `fail_topics` makes publish raise for those topics."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any], Optional[str]]] = []
        self.fail_topics: set[str] = set()

    async def publish(self, topic: str, payload: dict, dedup_key: Optional[str] = None) -> None:
        if topic in self.fail_topics:
            raise ConnectionError(f"broker unavailable for {topic}")
        self.events.append((topic, payload, dedup_key))

    def on(self, topic: str) -> list[tuple[str, dict[str, Any], Optional[str]]]:
        return [event for event in self.events if event[0] == topic]


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'users.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
async def supervisor(session_factory):
    # Depends on the store so leftover tasks are drained before the engine closes
    supervisor = BackgroundTaskSupervisor()
    yield supervisor
    await supervisor.drain(timeout=5)


@pytest.fixture
def orchestrator(session_factory, cache, publisher, supervisor) -> FollowOrchestrator:
    return FollowOrchestrator(
        session_factory, cache, publisher, supervisor, transaction_timeout=2.0
    )


@pytest.fixture
def make_user(session_factory):
    async def _make_user(user_id: str, username: Optional[str] = None, **fields) -> User:
        async with session_factory() as session:
            user = User(
                id=user_id,
                auth_user_id=fields.pop("auth_user_id", f"auth-{user_id}"),
                username=username or user_id,
                **fields,
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def make_edge(session_factory):
    async def _make_edge(follower_id: str, following_id: str, created_at: datetime) -> None:
        async with session_factory() as session:
            session.add(
                Follow(follower_id=follower_id, following_id=following_id, created_at=created_at)
            )
            await session.commit()

    return _make_edge


@pytest.fixture
def count_edges(session_factory):
    async def _count_edges(**filters) -> int:
        async with session_factory() as session:
            stmt = select(func.count()).select_from(Follow).filter_by(**filters)
            return await session.scalar(stmt)

    return _count_edges


def auth_headers(user_id: Optional[str]) -> dict[str, str]:
    claims = {"userId": user_id} if user_id else {"role": "user"}
    token = jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def service_headers(service: str = "auth-service") -> dict[str, str]:
    token = jwt.encode(
        {"service": service}, settings.service_token_secret, algorithm=settings.jwt_algorithm
    )
    return {"X-Service-Token": token}


@pytest.fixture
def wire(session_factory, cache):
    """Point the app's dependencies at the test store, cache and a given orchestrator."""

    def _wire(orchestrator: FollowOrchestrator) -> None:
        async def override_get_db():
            async with session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_profile_cache] = lambda: cache
        app.dependency_overrides[get_follow_orchestrator] = lambda: orchestrator

    yield _wire
    app.dependency_overrides.clear()


@pytest.fixture
async def client(wire, orchestrator):
    wire(orchestrator)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
