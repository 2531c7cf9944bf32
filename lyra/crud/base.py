from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession


TModel = TypeVar("TModel")
TCreate = TypeVar("TCreate")


class BaseCRUD(Generic[TModel, TCreate]):
    """Owner-scoped insert/list helper for async sessions.

    Nothing here commits; the caller owns the transaction.
    """

    def __init__(self, model: type[TModel], *, owner_field: str = "user_id") -> None:
        self.model = model
        self.owner_field = owner_field

    async def create(self, session: AsyncSession, *, obj_in: TCreate, owner_id: Any | None = None) -> TModel:
        data = obj_in.model_dump() if isinstance(obj_in, BaseModel) else dict(obj_in)
        if owner_id is not None:
            data.setdefault(self.owner_field, owner_id)

        row = self.model(**data)  # type: ignore[call-arg]
        session.add(row)
        await session.flush()
        return row

    async def get_multi(
        self,
        session: AsyncSession,
        *,
        owner_id: Any,
        limit: int = 100,
        order_by: Any | None = None,
    ) -> list[TModel]:
        q = select(self.model).where(getattr(self.model, self.owner_field) == owner_id)
        if order_by is not None:
            q = q.order_by(order_by)

        r = await session.execute(q.limit(max(1, limit)))
        return list(r.scalars().all())
