import os
import tempfile
from datetime import datetime, timedelta, timezone

# Settings are read at import time: point them at throwaway locations and keep
# the scheduler out of the app lifespan before anything imports lyra.
_TMP = tempfile.mkdtemp(prefix="lyra-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("ARTIFACT_ROOT", os.path.join(_TMP, "artifacts"))

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from lyra.models import Base  # noqa: E402
from lyra.services.task_store import TaskStore  # noqa: E402


class FakeClock:
    """Deterministic UTC clock. Every reading moves time forward by 1ms so
    creation order stays strict; advance() jumps further."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        now = self.current
        self.current += timedelta(milliseconds=1)
        return now

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


async def make_engine(db_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


def make_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path):
    engine = await make_engine(tmp_path / "tasks.db")
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory, clock) -> TaskStore:
    return TaskStore(session_factory, clock=clock, max_attempts=3)
