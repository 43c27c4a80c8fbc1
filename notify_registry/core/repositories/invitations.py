from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.core.repositories.base import Repository
from notify_registry.models.invitation import Invitation


class InvitationRepository(Repository[Invitation]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=Invitation, key_column="email")

    async def list_pending(self) -> list[Invitation]:
        result = await self.session.execute(
            self._select().where(Invitation.status == "pending").order_by(Invitation.email)
        )
        return list(result.scalars().all())

    async def put(self, email: str, **values: object) -> Invitation:
        """Create or replace the invitation keyed by ``email``."""
        existing = await self.get(email)
        if existing is None:
            return await self.create(email=email, **values)
        for field, value in values.items():
            setattr(existing, field, value)
        await self.session.flush()
        return existing
