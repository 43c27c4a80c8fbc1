from __future__ import annotations

from collections.abc import AsyncGenerator, Iterable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from notify_registry.core.config import settings

engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def lock_organizations(session: AsyncSession, organization_ids: Iterable[str]) -> None:
    """Serialize admissions per organization until the current transaction ends.

    Locks are taken in sorted order so two writers touching overlapping
    organizations cannot deadlock.
    """
    for organization_id in sorted(set(organization_ids)):
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": f"admission:{organization_id}"},
        )
