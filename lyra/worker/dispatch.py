from __future__ import annotations

import logging

from lyra.models.task import Task
from lyra.schemas.task import BatchInput, GenerateInput
from lyra.services.task_store import TaskStore
from lyra.worker.scheduler import Scheduler

logger = logging.getLogger(__name__)


async def submit_task(
    *,
    store: TaskStore,
    payload: GenerateInput | BatchInput,
    user_id: str | None,
    scheduler: Scheduler | None = None,
) -> Task:
    """Persist a new pending task and nudge the local scheduler.

    The task is durable once enqueue() returns; waking the scheduler only
    shortens the wait until the next tick. When no scheduler runs in this
    process (API-only deployment) the task is picked up by whichever
    process owns the loop.
    """

    task = await store.enqueue(payload, user_id=user_id)
    if scheduler is not None and scheduler.is_running:
        scheduler.wake()
    return task
