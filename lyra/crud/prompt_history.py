from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from lyra.crud.base import BaseCRUD
from lyra.models.prompt_history import PromptHistory


prompt_history_crud: BaseCRUD[PromptHistory, dict] = BaseCRUD(PromptHistory)


async def list_prompt_history(
    session: AsyncSession,
    *,
    user_id: str,
    limit: int = 50,
) -> list[PromptHistory]:
    return await prompt_history_crud.get_multi(
        session,
        owner_id=user_id,
        limit=max(1, min(limit, 200)),
        order_by=PromptHistory.created_at.desc(),
    )
