from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from lyra.config import settings


TaskType = Literal["generate", "batch"]
TaskStatus = Literal["pending", "processing", "completed", "failed"]


class GenerateInput(BaseModel):
    """Payload for a single image generation.

    Either a free-text `prompt` or a structured `generation_config` must be
    present. A config selects the structured generation path when
    `template_id == "custom"` or when no prompt is given.
    """

    type: Literal["generate"] = "generate"

    image_base64: str = Field(min_length=1)
    prompt: str | None = None
    generation_config: dict[str, Any] | None = None

    aspect_ratio: str = Field(default_factory=lambda: settings.default_aspect_ratio)
    template_id: str | None = None
    template_name: str | None = None
    variable_values: dict[str, str] | None = None
    image_quality: str | None = None
    variant: str = "female"

    @model_validator(mode="after")
    def _require_prompt_or_config(self) -> "GenerateInput":
        if not self.prompt and not self.generation_config:
            raise ValueError("Either prompt or generation_config is required")
        return self

    @property
    def uses_structured_config(self) -> bool:
        if not self.generation_config:
            return False
        return self.template_id == "custom" or not self.prompt


class BatchInput(BaseModel):
    type: Literal["batch"] = "batch"

    image_base64: str = Field(min_length=1)
    base_prompt: str = Field(min_length=1)
    combinations: list[dict[str, str]] = Field(min_length=1)

    aspect_ratio: str = Field(default_factory=lambda: settings.default_aspect_ratio)
    template_id: str | None = None
    template_name: str | None = None


TaskInput = Annotated[Union[GenerateInput, BatchInput], Field(discriminator="type")]
task_input_adapter: TypeAdapter[GenerateInput | BatchInput] = TypeAdapter(TaskInput)


class GenerateOutput(BaseModel):
    type: Literal["generate"] = "generate"

    image_id: str
    image_url: str
    thumbnail_url: str | None = None


class BatchItemResult(BaseModel):
    index: int
    combination: dict[str, str]
    success: bool

    image_id: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None


class BatchOutput(BaseModel):
    type: Literal["batch"] = "batch"

    results: list[BatchItemResult] = Field(default_factory=list)
    success_count: int = 0
    fail_count: int = 0


class TaskRead(BaseModel):
    id: UUID
    type: TaskType
    status: TaskStatus
    progress: int

    output_data: dict[str, Any] | None = None
    error_message: str | None = None

    attempts: int = 0

    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class TaskListResponse(BaseModel):
    items: list[TaskRead] = Field(default_factory=list)


class TaskSubmitResponse(BaseModel):
    task_id: UUID
    status: TaskStatus
    queue_position: int
    total_images: int | None = None
