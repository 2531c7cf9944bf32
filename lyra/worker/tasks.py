from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from lyra.config import settings
from lyra.services.task_store import TaskStore
from lyra.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run_with_store(op: Callable[[TaskStore], Awaitable[T]]) -> T:
    # Each Celery invocation gets its own event loop, so it also gets its own
    # unpooled engine; pooled connections cannot cross loops.
    async def _main() -> T:
        engine = create_async_engine(settings.database_url, poolclass=NullPool)
        try:
            session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
            store = TaskStore(session_factory, max_attempts=settings.task_max_attempts)
            return await op(store)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


@celery_app.task(name="lyra.retention_sweep")
def retention_sweep(max_age_days: int | None = None) -> int:
    days = max_age_days if max_age_days is not None else settings.task_retention_days
    removed = _run_with_store(lambda store: store.retention_sweep(days))
    logger.info("retention_sweep removed=%s max_age_days=%s", removed, days)
    return removed


@celery_app.task(name="lyra.reset_stuck")
def reset_stuck(max_age_seconds: int | None = None) -> int:
    seconds = max_age_seconds if max_age_seconds is not None else settings.stuck_task_timeout_seconds
    reset = _run_with_store(lambda store: store.reset_stuck(timedelta(seconds=seconds)))
    if reset:
        logger.info("reset_stuck count=%s max_age_seconds=%s", reset, seconds)
    return reset
