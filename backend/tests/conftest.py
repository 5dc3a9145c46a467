"""
Shared fixtures for the backend test-suite.

- `session_factory` / `db`: a throwaway SQLite database (aiosqlite) per test,
  with every table created up front.
- `client`: an httpx `AsyncClient` bound to the FastAPI app through
  `ASGITransport`, with `get_db` and the stream orchestrator pointed at the
  test database and at `fake_driver`.
- `fake_driver`: a scripted `ModelDriver` so no test talks to a real model.
- `user`, `auth_headers`: a persisted account and its bearer header.
- `admin_headers`: bearer header of an admin account; `fake_executor`
  stands in for the MCP client behind `/api/tools`.
"""

import os
from collections.abc import AsyncGenerator

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-0000")

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from forgechat.api.chat import get_stream_orchestrator
from forgechat.core.database import Base, get_db
from forgechat.core.security import create_access_token, hash_password
from forgechat.integrations.mcp_client import get_tool_executor
from forgechat.integrations.model_driver import ModelDriver, get_model_driver
from forgechat.main import app
from forgechat.models import User
from forgechat.services.stream_service import StreamOrchestrator

from tests.fakes import FakeDriver, FakeToolExecutor


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'forgechat.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver(title="Friendly greeting")


@pytest_asyncio.fixture
def orchestrator_factory(session_factory):
    def make(driver: ModelDriver, **kwargs) -> StreamOrchestrator:
        kwargs.setdefault("heartbeat_sec", 5)
        kwargs.setdefault("system_prompt", "You are helpful.")
        kwargs.setdefault("title_deadline_sec", 1.0)
        return StreamOrchestrator(driver, session_factory=session_factory, **kwargs)

    return make


@pytest_asyncio.fixture
async def user(db) -> User:
    account = User(email="dev@example.com", full_name="Dev", hashed_password=hash_password("s3cret-pass"))
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


@pytest_asyncio.fixture
def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest_asyncio.fixture
async def admin_headers(db) -> dict:
    admin = User(
        email="ops@example.com", full_name="Ops", hashed_password=hash_password("s3cret-pass"), role="admin"
    )
    db.add(admin)
    await db.commit()
    await db.refresh(admin)
    return {"Authorization": f"Bearer {create_access_token(admin.id)}"}


@pytest_asyncio.fixture
def fake_executor() -> FakeToolExecutor:
    return FakeToolExecutor()


@pytest_asyncio.fixture
async def client(session_factory, fake_driver, orchestrator_factory, fake_executor) -> AsyncGenerator[AsyncClient, None]:
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_model_driver] = lambda: fake_driver
    app.dependency_overrides[get_stream_orchestrator] = lambda: orchestrator_factory(fake_driver)
    app.dependency_overrides[get_tool_executor] = lambda: fake_executor
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
