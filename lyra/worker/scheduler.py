"""Single-process scheduler: recovers stuck tasks and dispatches pending ones.

Each tick:
1. reset_stuck() returns abandoned `processing` tasks to `pending`, skipping
   the ones this process is still running
2. free slots = max_concurrency - tasks this process has in flight
3. claim_pending(free slots) and spawn one asyncio task per claimed task

Dispatch never waits for a task body, so a slow generation call only holds
its own slot. The in-flight set is process-local; after a restart it starts
empty and the store's `processing` rows are recovered through reset_stuck().
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from datetime import timedelta

from lyra.config import settings
from lyra.models.task import Task
from lyra.services.task_store import TaskStore
from lyra.worker.runner import TaskRunner

logger = logging.getLogger("lyra.scheduler")


class Scheduler:
    def __init__(
        self,
        *,
        store: TaskStore,
        runner: TaskRunner,
        max_concurrency: int | None = None,
        poll_interval: float | None = None,
        stuck_timeout: timedelta | None = None,
        retention_days: int | None = None,
        retention_interval: float | None = None,
        retention_in_process: bool | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        if max_concurrency is None:
            max_concurrency = settings.scheduler_max_concurrency
        if stuck_timeout is None:
            stuck_timeout = timedelta(seconds=settings.stuck_task_timeout_seconds)

        self.max_concurrency = max(1, max_concurrency)
        self.poll_interval = poll_interval if poll_interval is not None else settings.scheduler_poll_interval_seconds
        self.stuck_timeout = stuck_timeout
        self.retention_days = retention_days if retention_days is not None else settings.task_retention_days
        self.retention_interval = (
            retention_interval if retention_interval is not None else settings.retention_sweep_interval_seconds
        )
        self.retention_in_process = (
            settings.retention_in_process if retention_in_process is None else retention_in_process
        )

        self.is_running = False
        self._in_flight: dict[asyncio.Task, uuid.UUID] = {}
        self._loop_task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._last_retention: float | None = None

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrency - self.active_count)

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "active_count": self.active_count,
            "max_concurrency": self.max_concurrency,
        }

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            logger.info("scheduler_already_running")
            return

        self.is_running = True
        self._loop_task = asyncio.create_task(self._run_forever(), name="lyra-scheduler")
        logger.info(
            "scheduler_started max_concurrency=%s poll_interval=%s",
            self.max_concurrency,
            self.poll_interval,
        )

    async def stop(self, *, drain_timeout: float = 30.0) -> None:
        """Stop ticking, then give in-flight tasks `drain_timeout` seconds to finish.

        Tasks still running after that are cancelled and stay `processing`
        until reset_stuck() picks them up again.
        """

        self.is_running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=drain_timeout)
            for t in pending:
                t.cancel()
            if pending:
                logger.warning("scheduler_drain_timeout cancelled=%s", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("scheduler_stopped")

    def wake(self) -> None:
        """Run the next tick now instead of after the poll interval."""

        self._wake.set()

    async def join(self) -> None:
        """Wait until every task dispatched so far has finished."""

        while self._in_flight:
            await asyncio.gather(*set(self._in_flight), return_exceptions=True)

    async def tick(self) -> int:
        """Run one sweep + dispatch pass and return how many tasks were dispatched."""

        try:
            reset = await self.store.reset_stuck(self.stuck_timeout, exclude_ids=set(self._in_flight.values()))
            if reset:
                logger.info("stuck_tasks_reset count=%s", reset)

            await self._maybe_sweep_retention()

            slots = self.available_slots
            if slots <= 0:
                return 0

            claimed = await self.store.claim_pending(slots)
            if claimed:
                logger.info("tasks_claimed count=%s slots=%s", len(claimed), slots)

            for task in claimed:
                self._dispatch(task)
            return len(claimed)
        except Exception:
            logger.exception("scheduler_tick_failed")
            return 0

    async def _run_forever(self) -> None:
        while self.is_running:
            await self.tick()
            await self._sleep()

    async def _sleep(self) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
        self._wake.clear()

    async def _maybe_sweep_retention(self) -> None:
        if not self.retention_in_process:
            return

        now = time.monotonic()
        if self._last_retention is not None and now - self._last_retention < self.retention_interval:
            return
        self._last_retention = now

        removed = await self.store.retention_sweep(self.retention_days)
        if removed:
            logger.info("tasks_swept count=%s max_age_days=%s", removed, self.retention_days)

    def _dispatch(self, task: Task) -> None:
        t = asyncio.create_task(self._execute(task), name=f"lyra-task-{task.id}")
        self._in_flight[t] = task.id
        t.add_done_callback(self._release)

    def _release(self, t: asyncio.Task) -> None:
        self._in_flight.pop(t, None)

    async def _execute(self, task: Task) -> None:
        try:
            await self.runner.run(task)
        except Exception:
            # runner.run() only raises when the store itself is unreachable.
            logger.exception("task_execution_error task_id=%s", task.id)
