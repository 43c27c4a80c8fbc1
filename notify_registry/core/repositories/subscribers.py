from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.core.repositories.base import Repository
from notify_registry.models.subscriber import Subscriber


class SubscriberRepository(Repository[Subscriber]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=Subscriber)

    async def get_by_email(self, email: str) -> Subscriber | None:
        result = await self.session.execute(
            self._select().where(func.lower(Subscriber.email) == email.lower()).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_in_organizations(self, organization_ids: Iterable[str]) -> list[Subscriber]:
        """Subscribers holding any key, active or not, under the given organizations."""
        ids = sorted(set(organization_ids))
        if not ids:
            return []
        result = await self.session.execute(
            self._select().where(or_(*(Subscriber.subscriptions.has_key(org_id) for org_id in ids)))
        )
        return list(result.scalars().all())
