import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from lyra.config import settings
from lyra.services.task_store import TaskStore
from lyra.worker import tasks
from lyra.worker.celery_app import celery_app, make_celery
from tests._fakes import generate_payload
from tests.conftest import FakeClock, make_engine, make_session_factory


# Celery tasks call asyncio.run() themselves, so these tests stay synchronous.


@pytest.fixture
def celery_db(tmp_path, monkeypatch):
    db_path = tmp_path / "celery.db"
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{db_path}")
    return db_path


def _seed(db_path, scenario):
    async def _main():
        engine = await make_engine(db_path)
        try:
            clock = FakeClock(datetime.now(timezone.utc) - timedelta(days=30))
            store = TaskStore(make_session_factory(engine), clock=clock)
            return await scenario(store)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def _status(db_path, task_id):
    async def _main():
        engine = await make_engine(db_path)
        try:
            task = await TaskStore(make_session_factory(engine)).get(task_id)
            return None if task is None else task.status
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def test_maintenance_tasks_are_registered():
    assert "lyra.retention_sweep" in celery_app.tasks
    assert "lyra.reset_stuck" in celery_app.tasks


def test_beat_schedule_runs_maintenance_only_without_in_process_scheduler(monkeypatch):
    monkeypatch.setattr(settings, "retention_in_process", False)
    schedule = make_celery().conf.beat_schedule

    assert schedule["lyra-retention-sweep"]["task"] == "lyra.retention_sweep"
    assert schedule["lyra-reset-stuck"]["task"] == "lyra.reset_stuck"

    monkeypatch.setattr(settings, "retention_in_process", True)
    assert make_celery().conf.beat_schedule == {}
    assert "lyra-reset-stuck" in make_celery(beat_maintenance=True).conf.beat_schedule


def test_retention_sweep_task_deletes_old_terminal_tasks(celery_db):
    async def scenario(store):
        done = await store.enqueue(generate_payload())
        pending = await store.enqueue(generate_payload())
        await store.claim_pending(1)
        await store.complete(done.id, {"type": "generate", "image_id": "i", "image_url": "/u/i.png"})
        return done.id, pending.id

    done_id, pending_id = _seed(celery_db, scenario)

    assert tasks.retention_sweep(max_age_days=7) == 1
    assert _status(celery_db, done_id) is None
    assert _status(celery_db, pending_id) == "pending"


def test_reset_stuck_task_requeues_old_processing_tasks(celery_db):
    async def scenario(store):
        task = await store.enqueue(generate_payload())
        await store.claim_pending(1)
        return task.id

    task_id = _seed(celery_db, scenario)

    assert tasks.reset_stuck(max_age_seconds=600) == 1
    assert _status(celery_db, task_id) == "pending"
