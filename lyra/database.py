from __future__ import annotations

from collections.abc import AsyncGenerator
import os
import sys

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from lyra.config import settings


_engine_kwargs: dict = {"pool_pre_ping": True}

# NOTE: Under pytest the sync TestClient (AnyIO portal) and asyncio.run() calls
# can drive the engine from different event loops. Pooled asyncpg/aiosqlite
# connections must not be reused across loops, so pooling is disabled there.
if os.getenv("PYTEST_CURRENT_TEST") or ("pytest" in sys.modules):
    _engine_kwargs["poolclass"] = NullPool

engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session
