import asyncio
from datetime import timedelta

import pytest

from lyra.worker.dispatch import submit_task
from lyra.worker.runner import TaskRunner
from lyra.worker.scheduler import Scheduler
from tests._fakes import FakeGateway, MemoryArtifactStore, batch_payload, generate_payload


pytestmark = pytest.mark.anyio


async def eventually(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_scheduler(store, gateway=None, **kwargs):
    runner = TaskRunner(store=store, gateway=gateway or FakeGateway(), artifacts=MemoryArtifactStore())
    kwargs.setdefault("max_concurrency", 2)
    kwargs.setdefault("poll_interval", 60.0)
    kwargs.setdefault("stuck_timeout", timedelta(minutes=10))
    kwargs.setdefault("retention_in_process", False)
    return Scheduler(store=store, runner=runner, **kwargs)


async def test_tick_never_exceeds_max_concurrency(store):
    gate = asyncio.Event()
    gateway = FakeGateway(gate=gate)
    scheduler = make_scheduler(store, gateway)
    ids = [(await store.enqueue(generate_payload(prompt=f"p{i}"))).id for i in range(5)]

    assert await scheduler.tick() == 2
    await eventually(lambda: gateway.in_flight == 2)

    assert scheduler.active_count == 2
    assert scheduler.available_slots == 0
    assert await scheduler.tick() == 0
    assert (await store.queue_stats())["processing"] == 2
    assert (await store.queue_stats())["pending"] == 3

    gate.set()
    for _ in range(3):
        await scheduler.join()
        assert (await store.queue_stats())["processing"] == 0
        await scheduler.tick()
        assert (await store.queue_stats())["processing"] <= 2
    await scheduler.join()

    for task_id in ids:
        assert (await store.get(task_id)).status == "completed"
    assert gateway.max_in_flight == 2


async def test_tick_requeues_stuck_tasks_before_claiming(store, clock):
    scheduler = make_scheduler(store)
    task = await store.enqueue(generate_payload())
    await store.claim_pending(1)
    clock.advance(minutes=11)

    assert await scheduler.tick() == 1
    await scheduler.join()

    done = await store.get(task.id)
    assert done.status == "completed"
    assert done.attempts == 2


async def test_runner_crash_frees_the_slot(store):
    class CrashingRunner:
        async def run(self, task):
            raise RuntimeError("store unreachable")

    scheduler = Scheduler(
        store=store,
        runner=CrashingRunner(),
        max_concurrency=1,
        poll_interval=60.0,
        retention_in_process=False,
    )
    await store.enqueue(generate_payload())
    await store.enqueue(generate_payload())

    assert await scheduler.tick() == 1
    await scheduler.join()
    assert scheduler.active_count == 0
    assert await scheduler.tick() == 1
    await scheduler.join()


async def test_tick_swallows_store_errors(store, monkeypatch):
    scheduler = make_scheduler(store)

    async def broken(max_age, **kwargs):
        raise ConnectionError("database down")

    monkeypatch.setattr(store, "reset_stuck", broken)

    assert await scheduler.tick() == 0


async def test_retention_sweep_runs_once_per_interval(store, monkeypatch):
    calls = []

    async def sweep(days):
        calls.append(days)
        return 0

    monkeypatch.setattr(store, "retention_sweep", sweep)
    scheduler = make_scheduler(store, retention_in_process=True, retention_days=7, retention_interval=3600)

    await scheduler.tick()
    await scheduler.tick()

    assert calls == [7]


async def test_retention_sweep_can_be_left_to_celery(store, monkeypatch):
    calls = []

    async def sweep(days):
        calls.append(days)
        return 0

    monkeypatch.setattr(store, "retention_sweep", sweep)
    scheduler = make_scheduler(store, retention_in_process=False)

    await scheduler.tick()

    assert calls == []


async def test_submit_wakes_running_scheduler(store):
    scheduler = make_scheduler(store, poll_interval=60.0)
    scheduler.start()
    try:
        assert scheduler.status() == {"is_running": True, "active_count": 0, "max_concurrency": 2}
        # Let the first (empty) tick run so the loop is parked in its long sleep.
        await asyncio.sleep(0.1)

        task = await submit_task(store=store, payload=generate_payload(), user_id="alice", scheduler=scheduler)

        async def finished():
            return (await store.get(task.id)).status == "completed"

        await eventually(finished)
    finally:
        await scheduler.stop()

    assert scheduler.status()["is_running"] is False


async def test_stop_cancels_tasks_that_outlive_the_drain(store):
    gate = asyncio.Event()
    gateway = FakeGateway(gate=gate)
    scheduler = make_scheduler(store, gateway)
    task = await store.enqueue(generate_payload())

    scheduler.start()
    await eventually(lambda: gateway.in_flight == 1)
    await scheduler.stop(drain_timeout=0.05)

    assert scheduler.active_count == 0
    assert (await store.get(task.id)).status == "processing"


async def test_long_running_task_is_not_requeued_while_in_flight(store, clock):
    gate = asyncio.Event()
    gateway = FakeGateway(gate=gate)
    scheduler = make_scheduler(store, gateway)
    task = await store.enqueue(batch_payload([{"scene": f"scene-{i}"} for i in range(3)]))

    assert await scheduler.tick() == 1
    await eventually(lambda: gateway.in_flight == 1)
    clock.advance(minutes=11)

    assert await scheduler.tick() == 0
    assert scheduler.active_count == 1
    running = await store.get(task.id)
    assert running.status == "processing"
    assert running.attempts == 1

    gate.set()
    await scheduler.join()

    done = await store.get(task.id)
    assert done.status == "completed"
    assert done.output_data["success_count"] == 3
    assert len(gateway.calls) == 3
    assert gateway.max_in_flight == 1


async def test_runner_whose_task_was_reclaimed_elsewhere_cannot_finish_it(store, clock):
    gate = asyncio.Event()
    gateway = FakeGateway(gate=gate)
    scheduler = make_scheduler(store, gateway)
    task = await store.enqueue(generate_payload())

    assert await scheduler.tick() == 1
    await eventually(lambda: gateway.in_flight == 1)

    # Another replica, which cannot see this process's in-flight set, recovers
    # the task and claims it again.
    clock.advance(minutes=11)
    assert await store.reset_stuck(timedelta(minutes=10)) == 1
    (reclaimed,) = await store.claim_pending(1)
    assert reclaimed.attempts == 2

    gate.set()
    await scheduler.join()

    current = await store.get(task.id)
    assert current.status == "processing"
    assert current.attempts == 2
    assert current.output_data is None
    assert current.progress == 0


async def test_explicit_zero_settings_are_kept(store):
    scheduler = make_scheduler(
        store,
        max_concurrency=0,
        stuck_timeout=timedelta(0),
        retention_days=0,
        retention_interval=0,
    )

    assert scheduler.stuck_timeout == timedelta(0)
    assert scheduler.retention_days == 0
    assert scheduler.retention_interval == 0
    # At least one slot is always available.
    assert scheduler.max_concurrency == 1
