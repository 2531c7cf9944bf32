from __future__ import annotations

from pydantic import BaseModel


class QueueCounts(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class ProcessorStatus(BaseModel):
    is_running: bool
    active_count: int
    max_concurrency: int


class QueueStatsResponse(BaseModel):
    queue: QueueCounts
    processor: ProcessorStatus
