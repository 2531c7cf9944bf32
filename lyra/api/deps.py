from __future__ import annotations

from functools import lru_cache

from fastapi import Header, Request

from lyra.config import settings
from lyra.database import SessionLocal
from lyra.services.task_store import TaskStore
from lyra.worker.scheduler import Scheduler


def get_current_user_id(x_user_id: str | None = Header(None, alias="X-User-ID")) -> str | None:
    """Caller identity as forwarded by the upstream authentication layer.

    Missing or blank means an anonymous caller; anonymous tasks are only
    visible to other anonymous requests.
    """

    if x_user_id is None:
        return None
    return x_user_id.strip() or None


@lru_cache
def _default_task_store() -> TaskStore:
    return TaskStore(SessionLocal, max_attempts=settings.task_max_attempts)


def get_task_store(request: Request) -> TaskStore:
    return getattr(request.app.state, "task_store", None) or _default_task_store()


def get_scheduler(request: Request) -> Scheduler | None:
    return getattr(request.app.state, "scheduler", None)
