from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple

from notify_registry.core.licensing import normalize_license_type


class SubscriptionKey(NamedTuple):
    organization_id: str
    feed_id: str

    def __str__(self) -> str:
        return f"{self.organization_id}/{self.feed_id}"


SubscriptionMap = dict[SubscriptionKey, bool]


def decode_subscriptions(document: Mapping[str, Any] | None) -> SubscriptionMap:
    """Read the persisted ``{organization_id: {feed_id: bool}}`` form into keys."""
    decoded: SubscriptionMap = {}
    for organization_id, feeds in (document or {}).items():
        if not isinstance(feeds, Mapping):
            continue
        for feed_id, active in feeds.items():
            decoded[SubscriptionKey(str(organization_id), str(feed_id))] = active is True
    return decoded


def encode_subscriptions(subscriptions: Mapping[SubscriptionKey, bool]) -> dict[str, dict[str, bool]]:
    encoded: dict[str, dict[str, bool]] = {}
    for key, active in subscriptions.items():
        encoded.setdefault(key.organization_id, {})[key.feed_id] = bool(active)
    return encoded


def active_organizations(subscriptions: Mapping[SubscriptionKey, bool]) -> set[str]:
    return {key.organization_id for key, active in subscriptions.items() if active}


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


@dataclass(frozen=True, slots=True)
class FeedRecord:
    id: str
    name: str
    access: str = "public"
    paused: bool = False


@dataclass(frozen=True, slots=True)
class OrganizationRecord:
    id: str
    name: str
    license_type: str
    feeds: tuple[FeedRecord, ...] = ()

    @classmethod
    def from_row(cls, row: Any) -> OrganizationRecord:
        feeds = tuple(
            FeedRecord(
                id=str(feed["id"]),
                name=feed.get("name") or str(feed["id"]),
                access=feed.get("access") or "public",
                paused=bool(feed.get("paused", False)),
            )
            for feed in (row.feeds or [])
            if feed.get("id")
        )
        return cls(
            id=row.id,
            name=row.name or row.id,
            license_type=normalize_license_type(row.license_type),
            feeds=feeds,
        )

    def subscription_keys(self) -> list[SubscriptionKey]:
        return [SubscriptionKey(self.id, feed.id) for feed in self.feeds]


@dataclass(frozen=True, slots=True)
class SubscriberRecord:
    id: str
    email: str | None
    subscriptions: Mapping[SubscriptionKey, bool] = field(default_factory=dict)
    disabled: bool = False
    last_login_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> SubscriberRecord:
        return cls(
            id=row.id,
            email=row.email,
            subscriptions=decode_subscriptions(row.subscriptions),
            disabled=bool(row.disabled),
            last_login_at=getattr(row, "last_login_at", None),
        )

    def active_in(self, organization_id: str) -> bool:
        return any(
            active and key.organization_id == organization_id
            for key, active in self.subscriptions.items()
        )


@dataclass(frozen=True, slots=True)
class InvitationRecord:
    email: str
    subscriptions: Mapping[SubscriptionKey, bool] = field(default_factory=dict)
    organization_id: str | None = None
    organization_name: str | None = None
    feed_name: str | None = None
    feed_count: int = 1
    status: str = "pending"
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> InvitationRecord:
        return cls(
            email=normalize_email(row.email) or row.email,
            subscriptions=decode_subscriptions(row.subscriptions),
            organization_id=row.organization_id,
            organization_name=row.organization_name,
            feed_name=row.feed_name,
            feed_count=row.feed_count or 1,
            status=row.status,
            created_at=getattr(row, "created_at", None),
        )


def subscribers_from_rows(rows: Iterable[Any]) -> list[SubscriberRecord]:
    return [SubscriberRecord.from_row(row) for row in rows]
