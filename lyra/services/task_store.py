from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Collection
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lyra.models.task import ACTIVE_STATUSES, TERMINAL_STATUSES, Task
from lyra.schemas.task import BatchInput, GenerateInput

logger = logging.getLogger("lyra.store")


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _payload_dict(payload: BaseModel | dict[str, Any]) -> dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)


def _owned(stmt, task_id: uuid.UUID, attempt: int | None):
    stmt = stmt.where(Task.id == task_id).where(Task.status == "processing")
    if attempt is not None:
        stmt = stmt.where(Task.attempts == attempt)
    return stmt


class TaskStore:
    """Authoritative record of every task and the only place its status changes.

    Each operation runs in its own session and commits before returning, so
    callers never share transactions. Transitions are guarded in the WHERE
    clause of a single UPDATE: a transition that does not apply to the task's
    current status is a no-op and reports False instead of raising.

    `claim_pending` selects with FOR UPDATE SKIP LOCKED (PostgreSQL), which
    keeps concurrent claimers disjoint across processes. Engines without row
    locks (SQLite) are covered by an in-process lock around the claim.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utcnow,
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.max_attempts = max(1, max_attempts)
        self._claim_lock = asyncio.Lock()

    def now(self) -> datetime:
        return self._clock()

    async def enqueue(
        self,
        payload: GenerateInput | BatchInput,
        *,
        user_id: str | None = None,
    ) -> Task:
        """Insert a new pending task. The task type is taken from the payload tag."""

        task = Task(
            id=uuid.uuid4(),
            type=payload.type,
            user_id=user_id,
            status="pending",
            progress=0,
            attempts=0,
            input_data=_payload_dict(payload),
            output_data=None,
            error_message=None,
            created_at=self._clock(),
        )

        async with self._session_factory() as session:
            session.add(task)
            await session.commit()

        logger.info("task_enqueued task_id=%s type=%s user_id=%s", task.id, task.type, user_id)
        return task

    async def get(self, task_id: uuid.UUID) -> Task | None:
        async with self._session_factory() as session:
            return await session.get(Task, task_id)

    async def claim_pending(self, limit: int) -> list[Task]:
        """Move up to `limit` oldest pending tasks to processing and return them."""

        if limit <= 0:
            return []

        async with self._claim_lock:
            async with self._session_factory() as session:
                now = self._clock()
                candidates = (
                    select(Task.id)
                    .where(Task.status == "pending")
                    .order_by(Task.created_at.asc(), Task.id.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                    .correlate(None)
                )
                stmt = (
                    update(Task)
                    .where(Task.id.in_(candidates))
                    .where(Task.status == "pending")
                    .values(
                        status="processing",
                        started_at=now,
                        progress=0,
                        attempts=Task.attempts + 1,
                    )
                    .returning(Task)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                claimed = list(result.scalars().all())
                await session.commit()

        # RETURNING order is engine-defined; hand tasks out FIFO.
        claimed.sort(key=lambda t: (t.created_at, str(t.id)))
        return claimed

    async def update_progress(self, task_id: uuid.UUID, percent: int, *, attempt: int | None = None) -> bool:
        """Raise a processing task's progress. Lower values are ignored.

        With `attempt`, the write only applies while the task is still on that
        claim; a runner whose task was requeued and claimed again is ignored.
        """

        percent = max(0, min(100, int(percent)))
        async with self._session_factory() as session:
            result = await session.execute(
                _owned(update(Task), task_id, attempt)
                .where(Task.progress <= percent)
                .values(progress=percent)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def complete(
        self,
        task_id: uuid.UUID,
        output_data: BaseModel | dict[str, Any],
        *,
        attempt: int | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                _owned(update(Task), task_id, attempt)
                .values(
                    status="completed",
                    progress=100,
                    output_data=_payload_dict(output_data),
                    error_message=None,
                    completed_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning("complete_ignored task_id=%s reason=not_owned", task_id)
            return False
        return True

    async def fail(self, task_id: uuid.UUID, message: str, *, attempt: int | None = None) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                _owned(update(Task), task_id, attempt)
                .values(
                    status="failed",
                    output_data=None,
                    error_message=message or "Unknown error",
                    completed_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning("fail_ignored task_id=%s reason=not_owned", task_id)
            return False
        return True

    async def reset_stuck(self, max_age: timedelta, *, exclude_ids: Collection[uuid.UUID] = ()) -> int:
        """Return processing tasks started before now - max_age to pending.

        Tasks that already used up `max_attempts` claims are failed instead of
        being requeued. Only the number requeued is returned. `exclude_ids` are
        tasks the caller is still executing; they are never treated as stuck.
        """

        now = self._clock()
        stuck = [Task.status == "processing", Task.started_at < now - max_age]
        if exclude_ids:
            stuck.append(Task.id.not_in(list(exclude_ids)))

        async with self._session_factory() as session:
            exhausted = await session.execute(
                update(Task)
                .where(*stuck)
                .where(Task.attempts >= self.max_attempts)
                .values(
                    status="failed",
                    error_message=f"Task abandoned after {self.max_attempts} attempts",
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            requeued = await session.execute(
                update(Task)
                .where(*stuck)
                .values(status="pending", started_at=None, progress=0)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if exhausted.rowcount:
            logger.warning("stuck_tasks_abandoned count=%s max_attempts=%s", exhausted.rowcount, self.max_attempts)
        return requeued.rowcount

    async def list_active(self, user_id: str | None) -> list[Task]:
        q = select(Task).where(Task.status.in_(ACTIVE_STATUSES))
        q = q.where(Task.user_id.is_(None) if user_id is None else Task.user_id == user_id)
        q = q.order_by(Task.created_at.asc())

        async with self._session_factory() as session:
            r = await session.execute(q)
            return list(r.scalars().all())

    async def list_recent(self, user_id: str | None, *, limit: int = 50) -> list[Task]:
        q = select(Task)
        q = q.where(Task.user_id.is_(None) if user_id is None else Task.user_id == user_id)
        q = q.order_by(Task.created_at.desc()).limit(max(1, min(limit, 200)))

        async with self._session_factory() as session:
            r = await session.execute(q)
            return list(r.scalars().all())

    async def retention_sweep(self, max_age_days: int) -> int:
        """Delete terminal tasks created more than `max_age_days` ago."""

        cutoff = self._clock() - timedelta(days=max_age_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Task)
                .where(Task.status.in_(TERMINAL_STATUSES))
                .where(Task.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount

    async def queue_stats(self) -> dict[str, int]:
        stats = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        async with self._session_factory() as session:
            r = await session.execute(select(Task.status, func.count()).group_by(Task.status))
            for status, count in r.all():
                stats[status] = int(count or 0)
        return stats

    async def queue_position(self, task: Task) -> int:
        """Number of pending tasks created no later than `task` (itself included)."""

        async with self._session_factory() as session:
            r = await session.execute(
                select(func.count())
                .select_from(Task)
                .where(Task.status == "pending")
                .where(Task.created_at <= task.created_at)
            )
            return int(r.scalar_one() or 0)
