from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable

from lyra.models.task import Task
from lyra.schemas.task import (
    BatchInput,
    BatchItemResult,
    BatchOutput,
    GenerateInput,
    GenerateOutput,
    task_input_adapter,
)
from lyra.services.artifacts import ArtifactStorageError, ArtifactStore
from lyra.services.gateway import GeneratedImage, GenerationError, GenerationGateway
from lyra.services.prompt_history import PromptHistorySink
from lyra.services.task_store import TaskStore

logger = logging.getLogger("lyra.worker")


GENERATE_START_PROGRESS = 30
GENERATE_SAVE_PROGRESS = 80
BATCH_START_PROGRESS = 20
BATCH_END_PROGRESS = 90


def render_prompt(base_prompt: str, combination: dict[str, str]) -> str:
    """Substitute every `{{name}}` placeholder with the combination's value."""

    prompt = base_prompt
    for key, value in combination.items():
        prompt = prompt.replace("{{" + key + "}}", str(value))
    return prompt


def batch_progress(index: int, total: int) -> int:
    """Progress after finishing combination `index` (0-based) out of `total`."""

    span = BATCH_END_PROGRESS - BATCH_START_PROGRESS
    return round(BATCH_START_PROGRESS + (index + 1) / total * span)


def _new_image_id() -> str:
    return str(uuid.uuid4())


class TaskRunner:
    """Executes one claimed task against the gateway and artifact store.

    `run` never raises for task-level problems: every failure ends up as
    `TaskStore.fail(...)`. Inside a batch each combination has its own error
    boundary, so one bad combination only produces a failed result entry.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        gateway: GenerationGateway,
        artifacts: ArtifactStore,
        history: PromptHistorySink | None = None,
        gateway_timeout: float | None = None,
        id_factory: Callable[[], str] = _new_image_id,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.artifacts = artifacts
        self.history = history
        self.gateway_timeout = gateway_timeout
        self._id_factory = id_factory

    async def run(self, task: Task) -> None:
        logger.info("task_started task_id=%s type=%s attempt=%s", task.id, task.type, task.attempts)
        try:
            payload = task_input_adapter.validate_python({**task.input_data, "type": task.type})
            if isinstance(payload, GenerateInput):
                await self._run_generate(task, payload)
            else:
                await self._run_batch(task, payload)
        except (GenerationError, ArtifactStorageError) as e:
            logger.warning("task_failed task_id=%s type=%s error=%s", task.id, task.type, e)
            await self.store.fail(task.id, str(e), attempt=task.attempts)
        except Exception as e:
            logger.exception("task_crashed task_id=%s type=%s", task.id, task.type)
            await self.store.fail(task.id, str(e) or e.__class__.__name__, attempt=task.attempts)

    async def _generate(
        self,
        image_base64: str,
        *,
        prompt: str | None = None,
        config: dict | None = None,
        aspect_ratio: str,
        quality: str | None = None,
        variant: str | None = None,
    ) -> GeneratedImage:
        call = self.gateway.generate(
            image_base64,
            prompt=prompt,
            config=config,
            aspect_ratio=aspect_ratio,
            quality=quality,
            variant=variant,
        )
        if self.gateway_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.gateway_timeout)
        except asyncio.TimeoutError:
            raise GenerationError(f"Generation timed out after {self.gateway_timeout:g}s") from None

    async def _record_history(
        self,
        user_id: str,
        prompt: str,
        template_id: str | None,
        variables: dict[str, str],
    ) -> None:
        if self.history is None:
            return
        try:
            await self.history.record(user_id, prompt, template_id, variables, True)
        except Exception:
            logger.exception("prompt_history_failed user_id=%s template_id=%s", user_id, template_id)

    async def _run_generate(self, task: Task, payload: GenerateInput) -> None:
        await self.store.update_progress(task.id, GENERATE_START_PROGRESS, attempt=task.attempts)

        if payload.uses_structured_config:
            image = await self._generate(
                payload.image_base64,
                config=payload.generation_config,
                aspect_ratio=payload.aspect_ratio,
                quality=payload.image_quality or "1K",
                variant=payload.variant,
            )
        else:
            image = await self._generate(
                payload.image_base64,
                prompt=payload.prompt,
                aspect_ratio=payload.aspect_ratio,
                quality=payload.image_quality,
            )

        await self.store.update_progress(task.id, GENERATE_SAVE_PROGRESS, attempt=task.attempts)

        image_id = self._id_factory()
        stored = await self.artifacts.save(image, task.user_id, image_id, thumbnail=True)

        if task.user_id:
            await self._record_history(
                task.user_id,
                payload.prompt or "Custom Config",
                payload.template_id,
                payload.variable_values or {},
            )

        output = GenerateOutput(image_id=image_id, image_url=stored.url, thumbnail_url=stored.thumbnail_url)
        if await self.store.complete(task.id, output, attempt=task.attempts):
            logger.info("task_completed task_id=%s type=generate image_id=%s", task.id, image_id)

    async def _run_batch(self, task: Task, payload: BatchInput) -> None:
        total = len(payload.combinations)
        results: list[BatchItemResult] = []

        await self.store.update_progress(task.id, BATCH_START_PROGRESS, attempt=task.attempts)

        for index, combination in enumerate(payload.combinations):
            prompt = render_prompt(payload.base_prompt, combination)
            try:
                image = await self._generate(
                    payload.image_base64,
                    prompt=prompt,
                    aspect_ratio=payload.aspect_ratio,
                )
                image_id = self._id_factory()
                stored = await self.artifacts.save(image, task.user_id, image_id, thumbnail=False)
            except Exception as e:
                logger.warning("batch_item_failed task_id=%s index=%s error=%s", task.id, index, e)
                results.append(
                    BatchItemResult(
                        index=index,
                        combination=combination,
                        success=False,
                        error=str(e) or e.__class__.__name__,
                    )
                )
            else:
                results.append(
                    BatchItemResult(
                        index=index,
                        combination=combination,
                        success=True,
                        image_id=image_id,
                        image_url=stored.url,
                        thumbnail_url=stored.thumbnail_url,
                    )
                )
                if task.user_id:
                    await self._record_history(task.user_id, prompt, payload.template_id, combination)

            await self.store.update_progress(task.id, batch_progress(index, total), attempt=task.attempts)

        success_count = sum(1 for r in results if r.success)
        output = BatchOutput(results=results, success_count=success_count, fail_count=total - success_count)

        if success_count == 0:
            message = f"All {total} combinations failed: {results[0].error}"
            await self.store.fail(task.id, message, attempt=task.attempts)
            logger.warning("batch_failed task_id=%s total=%s", task.id, total)
            return

        if await self.store.complete(task.id, output, attempt=task.attempts):
            logger.info(
                "task_completed task_id=%s type=batch success=%s failed=%s",
                task.id,
                output.success_count,
                output.fail_count,
            )
