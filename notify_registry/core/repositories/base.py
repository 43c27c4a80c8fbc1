from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from notify_registry.models.base import TimestampedBase

ModelT = TypeVar("ModelT", bound=TimestampedBase)


class Repository(Generic[ModelT]):
    """Row access for one model keyed by a string primary key."""

    def __init__(self, session: AsyncSession, model: type[ModelT], key_column: str = "id") -> None:
        self.session = session
        self.model = model
        self.key_column = key_column

    @property
    def _key(self) -> Any:
        return getattr(self.model, self.key_column)

    def _select(self) -> Select[tuple[ModelT]]:
        return select(self.model)

    async def create(self, **values: object) -> ModelT:
        instance = self.model(**values)
        self.session.add(instance)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def get(self, entity_id: str) -> ModelT | None:
        result = await self.session.execute(self._select().where(self._key == entity_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, entity_id: str) -> ModelT | None:
        result = await self.session.execute(
            self._select().where(self._key == entity_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def list(self, *, limit: int | None = None, offset: int = 0) -> list[ModelT]:
        stmt = self._select().order_by(self._key).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_update(self, entity_ids: Iterable[str]) -> list[ModelT]:
        ids = sorted(set(entity_ids))
        if not ids:
            return []
        result = await self.session.execute(
            self._select().where(self._key.in_(ids)).order_by(self._key).with_for_update()
        )
        return list(result.scalars().all())

    async def update(self, entity_id: str, **values: object) -> ModelT | None:
        instance = await self.get(entity_id)
        if instance is None:
            return None

        for field, value in values.items():
            if field == self.key_column:
                continue
            setattr(instance, field, value)

        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def delete(self, entity_id: str) -> bool:
        result = await self.session.execute(delete(self.model).where(self._key == entity_id))
        return (result.rowcount or 0) > 0

    async def delete_many(self, entity_ids: Iterable[str]) -> int:
        ids = sorted(set(entity_ids))
        if not ids:
            return 0
        result = await self.session.execute(delete(self.model).where(self._key.in_(ids)))
        return result.rowcount or 0
