from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis

from notify_registry.agents.health import AgentHealth
from notify_registry.core.config import settings
from notify_registry.core.db import AsyncSessionLocal
from notify_registry.core.directory import DirectorySnapshot, TargetCatalog
from notify_registry.core.records import InvitationRecord, OrganizationRecord, subscribers_from_rows
from notify_registry.core.repositories import (
    InvitationRepository,
    OrganizationRepository,
    SubscriberRepository,
)

logger = logging.getLogger(__name__)


class DirectoryFeedAgent:
    """Keeps the in-memory directory and target catalog in step with storage.

    Each change event published on the registry channel triggers a full reload;
    the new snapshots replace the old ones in a single assignment.
    """

    def __init__(self, session_factory: Callable[[], Any] = AsyncSessionLocal) -> None:
        self.health = AgentHealth(name="directory-feed")
        self.directory = DirectorySnapshot.empty()
        self.catalog = TargetCatalog.empty()
        self._session_factory = session_factory
        self._refresh_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

    async def stop(self) -> None:
        self._stop_event.set()

    async def refresh(self) -> None:
        async with self._refresh_lock:
            async with self._session_factory() as session:
                subscriber_rows = await SubscriberRepository(session).list()
                invitation_rows = await InvitationRepository(session).list_pending()
                organization_rows = await OrganizationRepository(session).list()

            directory = DirectorySnapshot.build(
                subscribers_from_rows(subscriber_rows),
                [InvitationRecord.from_row(row) for row in invitation_rows],
            )
            catalog = TargetCatalog.build(OrganizationRecord.from_row(row) for row in organization_rows)
            self.directory, self.catalog = directory, catalog
            self.health.mark_refreshed()
            self.health.metrics["subscribers"] = len(directory.subscribers)
            self.health.metrics["invitations"] = len(directory.invitations)
            self.health.metrics["organizations"] = len(catalog.organizations)

    async def run(self) -> None:
        retry_delay = 1
        while not self._stop_event.is_set():
            try:
                await self._listen()
                retry_delay = 1
            except Exception as exc:  # pragma: no cover - operational path
                self.health.mark_error(exc)
                logger.exception("Directory feed failed; reconnecting in %ss", retry_delay)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=retry_delay)
                except asyncio.TimeoutError:
                    pass
                retry_delay = min(retry_delay * 2, settings.directory_reload_max_delay_seconds)

    async def _listen(self) -> None:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        pubsub = redis_client.pubsub()
        try:
            await pubsub.subscribe(settings.registry_events_channel)
            # Subscribed first, so no change can slip in between reload and listen.
            await self.refresh()
            while not self._stop_event.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                self.health.mark_event()
                coalesced = 1
                while await pubsub.get_message(ignore_subscribe_messages=True, timeout=0):
                    coalesced += 1
                self.health.incr("events", coalesced)
                await self.refresh()
        finally:
            await pubsub.aclose()
            await redis_client.aclose()


directory_feed = DirectoryFeedAgent()
