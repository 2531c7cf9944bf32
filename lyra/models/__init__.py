# Import models here so Alembic can discover them via metadata
from .base import Base  # noqa: F401
from .task import Task  # noqa: F401
from .prompt_history import PromptHistory  # noqa: F401
