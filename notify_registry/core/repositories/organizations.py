from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.core.repositories.base import Repository
from notify_registry.models.organization import Organization


class OrganizationRepository(Repository[Organization]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=Organization)

    async def get_many(self, organization_ids: Iterable[str]) -> list[Organization]:
        ids = sorted(set(organization_ids))
        if not ids:
            return []
        result = await self.session.execute(self._select().where(Organization.id.in_(ids)))
        return list(result.scalars().all())
