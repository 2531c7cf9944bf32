from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class PromptHistoryRead(BaseModel):
    id: UUID
    prompt: str
    template_id: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)
    succeeded: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PromptHistoryListResponse(BaseModel):
    items: list[PromptHistoryRead] = Field(default_factory=list)
