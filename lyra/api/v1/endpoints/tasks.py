from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from lyra.api.deps import get_current_user_id, get_scheduler, get_task_store
from lyra.config import settings
from lyra.schemas.queue import ProcessorStatus, QueueCounts, QueueStatsResponse
from lyra.schemas.task import (
    BatchInput,
    GenerateInput,
    TaskListResponse,
    TaskRead,
    TaskSubmitResponse,
)
from lyra.services.task_store import TaskStore
from lyra.worker.dispatch import submit_task
from lyra.worker.scheduler import Scheduler


router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("/generate", response_model=TaskSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_generate_task_endpoint(
    payload: GenerateInput,
    user_id: str | None = Depends(get_current_user_id),
    store: TaskStore = Depends(get_task_store),
    scheduler: Scheduler | None = Depends(get_scheduler),
) -> TaskSubmitResponse:
    task = await submit_task(store=store, payload=payload, user_id=user_id, scheduler=scheduler)
    position = await store.queue_position(task)

    return TaskSubmitResponse(task_id=task.id, status=task.status, queue_position=position)


@router.post("/batch", response_model=TaskSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_batch_task_endpoint(
    payload: BatchInput,
    user_id: str | None = Depends(get_current_user_id),
    store: TaskStore = Depends(get_task_store),
    scheduler: Scheduler | None = Depends(get_scheduler),
) -> TaskSubmitResponse:
    if len(payload.combinations) > settings.batch_max_combinations:
        raise HTTPException(
            status_code=422,
            detail=f"At most {settings.batch_max_combinations} combinations per batch",
        )

    task = await submit_task(store=store, payload=payload, user_id=user_id, scheduler=scheduler)
    position = await store.queue_position(task)

    return TaskSubmitResponse(
        task_id=task.id,
        status=task.status,
        queue_position=position,
        total_images=len(payload.combinations),
    )


@router.get("", response_model=TaskListResponse)
async def list_tasks_endpoint(
    active: bool = Query(False, description="Only pending/processing tasks"),
    limit: int = Query(50, ge=1, le=200, description="History size when active=false"),
    user_id: str | None = Depends(get_current_user_id),
    store: TaskStore = Depends(get_task_store),
) -> TaskListResponse:
    if active:
        items = await store.list_active(user_id)
    else:
        items = await store.list_recent(user_id, limit=limit)

    return TaskListResponse(items=[TaskRead.model_validate(t) for t in items])


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats_endpoint(
    store: TaskStore = Depends(get_task_store),
    scheduler: Scheduler | None = Depends(get_scheduler),
) -> QueueStatsResponse:
    counts = await store.queue_stats()

    if scheduler is not None:
        processor = ProcessorStatus(**scheduler.status())
    else:
        processor = ProcessorStatus(
            is_running=False,
            active_count=0,
            max_concurrency=settings.scheduler_max_concurrency,
        )

    return QueueStatsResponse(queue=QueueCounts(**counts), processor=processor)


@router.get("/{task_id}", response_model=TaskRead)
async def get_task_endpoint(
    task_id: str,
    user_id: str | None = Depends(get_current_user_id),
    store: TaskStore = Depends(get_task_store),
) -> TaskRead:
    try:
        # Keep it explicit to get a clean 404 for malformed UUIDs.
        task_uuid = uuid.UUID(task_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Task not found")

    task = await store.get(task_uuid)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    if task.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not allowed to access this task")

    return TaskRead.model_validate(task)
