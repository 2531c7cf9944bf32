from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lyra.api.deps import get_current_user_id
from lyra.crud.prompt_history import list_prompt_history
from lyra.database import get_db
from lyra.schemas.prompt_history import PromptHistoryListResponse, PromptHistoryRead


router = APIRouter(prefix="/prompt-history", tags=["prompt-history"])


@router.get("", response_model=PromptHistoryListResponse)
async def list_prompt_history_endpoint(
    limit: int = Query(50, ge=1, le=200),
    user_id: str | None = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> PromptHistoryListResponse:
    # Anonymous generations are never recorded, so there is nothing to list.
    if user_id is None:
        raise HTTPException(status_code=401, detail="X-User-ID header required")

    rows = await list_prompt_history(session, user_id=user_id, limit=limit)
    return PromptHistoryListResponse(items=[PromptHistoryRead.model_validate(r) for r in rows])
