"""Read-side projections over subscribers, invitations and organizations.

Both snapshots are immutable. Whenever the underlying collections change a new
snapshot is built and swapped in; nothing here is ever mutated in place.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal

from notify_registry.core.licensing import LicenseUsage, license_usage
from notify_registry.core.records import (
    InvitationRecord,
    OrganizationRecord,
    SubscriberRecord,
    SubscriptionKey,
    normalize_email,
)

EntryKind = Literal["subscriber", "invitation"]

ORGANIZATION_MISSING = "Organization no longer exists"
FEED_MISSING = "Feed no longer exists"


@dataclass(frozen=True, slots=True)
class TargetCatalog:
    """Organizations and the set of subscription keys that are currently valid."""

    organizations: Mapping[str, OrganizationRecord]
    valid_keys: frozenset[SubscriptionKey]

    @classmethod
    def build(cls, organizations: Iterable[OrganizationRecord]) -> TargetCatalog:
        by_id = {organization.id: organization for organization in organizations}
        keys = frozenset(
            key for organization in by_id.values() for key in organization.subscription_keys()
        )
        return cls(organizations=MappingProxyType(by_id), valid_keys=keys)

    @classmethod
    def empty(cls) -> TargetCatalog:
        return cls.build([])

    def get(self, organization_id: str) -> OrganizationRecord | None:
        return self.organizations.get(organization_id)

    def is_valid(self, key: SubscriptionKey) -> bool:
        return key in self.valid_keys

    def staleness_reason(self, key: SubscriptionKey) -> str | None:
        if key in self.valid_keys:
            return None
        if key.organization_id not in self.organizations:
            return ORGANIZATION_MISSING
        return FEED_MISSING


@dataclass(frozen=True, slots=True)
class DirectoryEntry:
    kind: EntryKind
    email: str | None
    subscriber: SubscriberRecord | None = None
    invitation: InvitationRecord | None = None

    @property
    def entry_id(self) -> str:
        if self.kind == "subscriber" and self.subscriber is not None:
            return self.subscriber.id
        if self.kind == "invitation" and self.invitation is not None:
            return self.invitation.email
        raise ValueError(f"Incomplete {self.kind} entry")


@dataclass(frozen=True, slots=True)
class DirectorySnapshot:
    subscribers: tuple[SubscriberRecord, ...]
    invitations: tuple[InvitationRecord, ...]
    _counts: Mapping[str, int]
    _by_email: Mapping[str, SubscriberRecord]
    _by_id: Mapping[str, SubscriberRecord]

    @classmethod
    def build(
        cls,
        subscribers: Iterable[SubscriberRecord],
        invitations: Iterable[InvitationRecord] = (),
    ) -> DirectorySnapshot:
        subscriber_tuple = tuple(subscribers)
        counts: dict[str, int] = {}
        by_email: dict[str, SubscriberRecord] = {}
        by_id: dict[str, SubscriberRecord] = {}
        for subscriber in subscriber_tuple:
            by_id[subscriber.id] = subscriber
            email = normalize_email(subscriber.email)
            if email is not None:
                by_email.setdefault(email, subscriber)
            # A set, so several feeds in one organization still count once.
            for organization_id in {
                key.organization_id for key, active in subscriber.subscriptions.items() if active
            }:
                counts[organization_id] = counts.get(organization_id, 0) + 1

        return cls(
            subscribers=subscriber_tuple,
            invitations=tuple(invitations),
            _counts=MappingProxyType(counts),
            _by_email=MappingProxyType(by_email),
            _by_id=MappingProxyType(by_id),
        )

    @classmethod
    def empty(cls) -> DirectorySnapshot:
        return cls.build([], [])

    def subscriber_count(self, organization_id: str) -> int:
        return self._counts.get(organization_id, 0)

    def has_active_subscription(self, subscriber: SubscriberRecord | None, organization_id: str) -> bool:
        if subscriber is None:
            return False
        return subscriber.active_in(organization_id)

    def find_subscriber(
        self,
        *,
        subscriber_id: str | None = None,
        email: str | None = None,
    ) -> SubscriberRecord | None:
        if subscriber_id is not None and subscriber_id in self._by_id:
            return self._by_id[subscriber_id]
        normalized = normalize_email(email)
        if normalized is not None:
            return self._by_email.get(normalized)
        return None

    def license_usage(self, organization: OrganizationRecord) -> LicenseUsage:
        return license_usage(organization.license_type, self.subscriber_count(organization.id))

    def merged_list(self, organization_id: str | None = None) -> list[DirectoryEntry]:
        """Subscribers and pending invitations, one entry per email, sorted by email.

        A registered subscriber always shadows an invitation for the same email.
        With ``organization_id`` the list is narrowed to subscribers active in that
        organization and invitations that originated from it.
        """
        subscribers = self.subscribers
        invitations = self.invitations
        if organization_id is not None:
            subscribers = tuple(s for s in subscribers if s.active_in(organization_id))
            invitations = tuple(i for i in invitations if i.organization_id == organization_id)

        merged: dict[str, DirectoryEntry] = {}
        for subscriber in subscribers:
            email = normalize_email(subscriber.email)
            # Subscribers without an email cannot collide with an invitation.
            merge_key = email if email is not None else f"id:{subscriber.id}"
            merged.setdefault(
                merge_key,
                DirectoryEntry(kind="subscriber", email=subscriber.email, subscriber=subscriber),
            )
        for invitation in invitations:
            if invitation.status != "pending":
                continue
            email = normalize_email(invitation.email) or invitation.email
            # Shadowed even when the subscriber was filtered out above.
            if email not in merged and email not in self._by_email:
                merged[email] = DirectoryEntry(kind="invitation", email=invitation.email, invitation=invitation)

        return sorted(merged.values(), key=lambda entry: (entry.email or "").lower())
