from __future__ import annotations

from celery import Celery

from lyra.config import settings


def make_celery(*, beat_maintenance: bool | None = None) -> Celery:
    """Create the Celery app used for out-of-process maintenance.

    Task dispatch itself is owned by the in-process Scheduler; Celery beat
    only runs the periodic store maintenance (retention sweep, stuck-task
    recovery) for deployments that set RETENTION_IN_PROCESS=0. With the
    in-process scheduler doing it, the beat schedule stays empty: beat cannot
    see which tasks a scheduler is still running.
    """

    if beat_maintenance is None:
        beat_maintenance = not settings.retention_in_process

    celery = Celery(
        "lyra",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["lyra.worker.tasks"],
    )

    beat_schedule = {}
    if beat_maintenance:
        beat_schedule = {
            "lyra-retention-sweep": {
                "task": "lyra.retention_sweep",
                "schedule": float(settings.retention_sweep_interval_seconds),
            },
            "lyra-reset-stuck": {
                "task": "lyra.reset_stuck",
                "schedule": float(settings.stuck_task_timeout_seconds),
            },
        }

    celery.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        beat_schedule=beat_schedule,
    )

    return celery


celery_app = make_celery()
