import pytest

from lyra.worker.runner import TaskRunner
from tests._fakes import (
    IMAGE_B64,
    FakeGateway,
    MemoryArtifactStore,
    MemoryHistory,
    generate_payload,
)


pytestmark = pytest.mark.anyio


@pytest.fixture
def progress_log(store, monkeypatch):
    seen = []
    original = store.update_progress

    async def spy(task_id, percent, **kwargs):
        applied = await original(task_id, percent, **kwargs)
        if applied:
            seen.append(percent)
        return applied

    monkeypatch.setattr(store, "update_progress", spy)
    return seen


def make_runner(store, **kwargs):
    kwargs.setdefault("gateway", FakeGateway())
    kwargs.setdefault("artifacts", MemoryArtifactStore())
    return TaskRunner(store=store, id_factory=lambda: "img-1", **kwargs)


async def claim_one(store, payload, user_id="alice"):
    await store.enqueue(payload, user_id=user_id)
    (task,) = await store.claim_pending(1)
    return task


async def test_generate_task_completes_with_image_url(store, progress_log):
    history = MemoryHistory()
    runner = make_runner(store, history=history)
    task = await claim_one(store, generate_payload(variable_values={"tone": "warm"}))

    await runner.run(task)

    done = await store.get(task.id)
    assert done.status == "completed"
    assert done.progress == 100
    assert done.error_message is None
    assert done.output_data == {
        "type": "generate",
        "image_id": "img-1",
        "image_url": "/uploads/generated/alice/img-1.png",
        "thumbnail_url": "/uploads/generated/alice/img-1_thumb.webp",
    }
    assert progress_log == [30, 80]
    assert runner.artifacts.saved["img-1"] == ("alice", b"image-1", True)
    assert history.records == [("alice", "studio portrait", "tpl-1", {"tone": "warm"}, True)]


async def test_free_text_prompt_is_passed_to_gateway(store):
    runner = make_runner(store)
    task = await claim_one(store, generate_payload(aspect_ratio="1:1", image_quality="2K"))

    await runner.run(task)

    assert runner.gateway.calls == [
        {
            "image_base64": IMAGE_B64,
            "prompt": "studio portrait",
            "config": None,
            "aspect_ratio": "1:1",
            "quality": "2K",
            "variant": None,
        }
    ]


async def test_custom_template_uses_structured_config(store):
    history = MemoryHistory()
    runner = make_runner(store, history=history)
    config = {"pose": "standing", "lighting": "soft"}
    payload = generate_payload(template_id="custom", generation_config=config, variant="male")
    task = await claim_one(store, payload)

    await runner.run(task)

    (call,) = runner.gateway.calls
    assert call["config"] == config
    assert call["quality"] == "1K"
    assert call["variant"] == "male"
    assert call["prompt"] is None
    assert (await store.get(task.id)).status == "completed"


async def test_config_without_prompt_records_placeholder_history(store):
    history = MemoryHistory()
    runner = make_runner(store, history=history)
    task = await claim_one(store, generate_payload(prompt=None, generation_config={"pose": "sitting"}))

    await runner.run(task)

    assert history.records[0][1] == "Custom Config"


async def test_gateway_failure_marks_task_failed(store, progress_log):
    runner = make_runner(store, gateway=FakeGateway(fail_on={1: "RENDER_FAILED"}))
    task = await claim_one(store, generate_payload())

    await runner.run(task)

    failed = await store.get(task.id)
    assert failed.status == "failed"
    assert failed.error_message == "RENDER_FAILED"
    assert failed.output_data is None
    assert progress_log == [30]
    assert runner.artifacts.saved == {}


async def test_storage_failure_marks_task_failed(store):
    runner = make_runner(store, artifacts=MemoryArtifactStore(fail=True))
    task = await claim_one(store, generate_payload())

    await runner.run(task)

    failed = await store.get(task.id)
    assert failed.status == "failed"
    assert failed.error_message == "disk full"


async def test_gateway_timeout_fails_the_task(store):
    runner = make_runner(store, gateway=FakeGateway(delay=1.0), gateway_timeout=0.05)
    task = await claim_one(store, generate_payload())

    await runner.run(task)

    failed = await store.get(task.id)
    assert failed.status == "failed"
    assert failed.error_message == "Generation timed out after 0.05s"


async def test_history_failure_does_not_fail_the_task(store):
    runner = make_runner(store, history=MemoryHistory(fail=True))
    task = await claim_one(store, generate_payload())

    await runner.run(task)

    assert (await store.get(task.id)).status == "completed"


async def test_anonymous_task_skips_history(store):
    history = MemoryHistory()
    runner = make_runner(store, history=history)
    task = await claim_one(store, generate_payload(), user_id=None)

    await runner.run(task)

    done = await store.get(task.id)
    assert done.status == "completed"
    assert done.output_data["image_url"] == "/uploads/generated/anonymous/img-1.png"
    assert history.records == []


async def test_unreadable_input_fails_instead_of_raising(store):
    runner = make_runner(store)
    task = await claim_one(store, generate_payload())
    task.input_data = {"image_base64": IMAGE_B64}

    await runner.run(task)

    failed = await store.get(task.id)
    assert failed.status == "failed"
    assert "prompt or generation_config" in failed.error_message
    assert runner.gateway.calls == []
