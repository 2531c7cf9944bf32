from .queue import ProcessorStatus, QueueCounts, QueueStatsResponse  # noqa: F401
from .task import (  # noqa: F401
    BatchInput,
    BatchItemResult,
    BatchOutput,
    GenerateInput,
    GenerateOutput,
    TaskListResponse,
    TaskRead,
    TaskSubmitResponse,
    task_input_adapter,
)
from .prompt_history import PromptHistoryListResponse, PromptHistoryRead  # noqa: F401
