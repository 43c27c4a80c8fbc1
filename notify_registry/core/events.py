from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone

import redis.asyncio as redis

from notify_registry.core.config import settings

ChangeNotifier = Callable[[str, Iterable[str]], Awaitable[None]]


async def publish_registry_change(collection: str, ids: Iterable[str]) -> None:
    """Tell every directory feed that ``collection`` changed for ``ids``."""
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis_client.publish(
            settings.registry_events_channel,
            json.dumps(
                {
                    "collection": collection,
                    "ids": sorted(ids),
                    "occurred_at": datetime.now(timezone.utc).isoformat(),
                }
            ),
        )
    finally:
        await redis_client.aclose()
