from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REMINDER_SWEEP_ENABLED", "false")
os.environ.setdefault("EMAIL_TRANSPORT", "local")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courseminder.delivery.transport import LocalTransport
from courseminder.deps import get_clock, get_db
from courseminder.main import app
from courseminder.models import Base
from courseminder.reminders.policies import ensure_default_policies
from courseminder.routers.delivery import get_transport

# Reference instant used across the suite: ten days before the canonical due date.
NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
DUE = datetime(2026, 2, 20, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
  def __init__(self, now: datetime) -> None:
    self.now = now

  def __call__(self) -> datetime:
    return self.now

  def set(self, now: datetime) -> None:
    self.now = now

  def advance(self, **kwargs) -> datetime:
    self.now = self.now + timedelta(**kwargs)
    return self.now


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
async def engine():
  eng = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
  )
  async with eng.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  yield eng
  await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncSession:
  async with session_factory() as session:
    await ensure_default_policies(session)
    await session.commit()
    yield session


@pytest.fixture
async def file_session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
  # Separate connections per session, for tests that race two workers.
  eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'courseminder.db'}")
  async with eng.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  factory = async_sessionmaker(bind=eng, class_=AsyncSession, expire_on_commit=False)
  async with factory() as s:
    await ensure_default_policies(s)
    await s.commit()
  yield factory
  await eng.dispose()


@pytest.fixture
def clock() -> FrozenClock:
  return FrozenClock(NOW)


@pytest.fixture
def transport() -> LocalTransport:
  return LocalTransport()


@pytest.fixture
async def client(db, session_factory, clock, transport) -> AsyncClient:
  async def _get_db():
    async with session_factory() as session:
      yield session

  app.dependency_overrides[get_db] = _get_db
  app.dependency_overrides[get_clock] = lambda: clock
  app.dependency_overrides[get_transport] = lambda: transport
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://localhost") as c:
      yield c
  finally:
    app.dependency_overrides.clear()


def as_user(user_id: str, role: str = "student") -> dict[str, str]:
  return {"X-User-Id": user_id, "X-User-Role": role}


STAFF = {"X-User-Id": "instructor-1", "X-User-Role": "instructor"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
