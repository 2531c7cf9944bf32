from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lyra.crud.prompt_history import prompt_history_crud

logger = logging.getLogger("lyra.prompt_history")


class PromptHistorySink(Protocol):
    async def record(
        self,
        owner_id: str,
        prompt: str,
        template_id: str | None,
        variables: dict[str, str],
        succeeded: bool,
    ) -> None: ...


class PromptHistoryRecorder:
    """Persists one prompt_history row per generation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        owner_id: str,
        prompt: str,
        template_id: str | None,
        variables: dict[str, str],
        succeeded: bool,
    ) -> None:
        async with self._session_factory() as session:
            await prompt_history_crud.create(
                session,
                obj_in={
                    "prompt": prompt,
                    "template_id": template_id,
                    "variables": dict(variables or {}),
                    "succeeded": succeeded,
                },
                owner_id=owner_id,
            )
            await session.commit()
        logger.debug("prompt_history_recorded owner_id=%s template_id=%s", owner_id, template_id)
