from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from notify_registry.core.directory import DirectorySnapshot, TargetCatalog
from notify_registry.core.licensing import tier_for
from notify_registry.core.records import SubscriberRecord, SubscriptionKey, active_organizations


@dataclass(frozen=True, slots=True)
class SubscriberIdentity:
    subscriber_id: str | None = None
    email: str | None = None


@dataclass(slots=True)
class GrantDecision:
    allowed: bool
    organization_id: str
    license_type: str | None
    limit: int | None
    current: int
    remaining: int | None
    reason: str | None = None


@dataclass(slots=True)
class Violation:
    organization_id: str
    organization_name: str
    reason: str
    limit: int | None
    current: int

    def message(self) -> str:
        return f"{self.organization_name}: {self.reason}"


@dataclass(slots=True)
class ChangeSetDecision:
    allowed: bool
    violations: list[Violation] = field(default_factory=list)


def newly_admitted_organizations(
    before: Mapping[SubscriptionKey, bool] | None,
    after: Mapping[SubscriptionKey, bool] | None,
) -> set[str]:
    """Organizations the subscriber has no active key in before but at least one after."""
    return active_organizations(after or {}) - active_organizations(before or {})


class AdmissionController:
    """Decides whether a subscriber may be counted against an organization's license.

    Purely advisory: it never writes. Callers that commit must hold the
    organization lock and evaluate against a directory read inside that lock.
    """

    def __init__(self, directory: DirectorySnapshot, catalog: TargetCatalog) -> None:
        self.directory = directory
        self.catalog = catalog

    def _resolve(self, identity: SubscriberIdentity) -> SubscriberRecord | None:
        return self.directory.find_subscriber(
            subscriber_id=identity.subscriber_id,
            email=identity.email,
        )

    def can_grant(self, organization_id: str, identity: SubscriberIdentity) -> GrantDecision:
        organization = self.catalog.get(organization_id)
        current = self.directory.subscriber_count(organization_id)
        if organization is None:
            return GrantDecision(
                allowed=False,
                organization_id=organization_id,
                license_type=None,
                limit=None,
                current=current,
                remaining=None,
                reason="Organization not found",
            )

        tier = tier_for(organization.license_type)
        limit = tier.max_subscribers
        remaining = None if limit is None else max(0, limit - current)

        # Already counted for this organization, so another feed costs nothing.
        if self.directory.has_active_subscription(self._resolve(identity), organization_id):
            return GrantDecision(
                allowed=True,
                organization_id=organization_id,
                license_type=tier.license_type,
                limit=limit,
                current=current,
                remaining=remaining,
            )

        allowed = limit is None or current < limit
        return GrantDecision(
            allowed=allowed,
            organization_id=organization_id,
            license_type=tier.license_type,
            limit=limit,
            current=current,
            remaining=remaining,
            reason=None if allowed else f"{tier.label} license limit reached ({limit} subscribers max)",
        )

    def check_organizations(
        self,
        organization_ids: Iterable[str],
        identity: SubscriberIdentity,
    ) -> ChangeSetDecision:
        violations: list[Violation] = []
        # Every organization is checked so the operator sees all of them at once.
        for organization_id in sorted(set(organization_ids)):
            decision = self.can_grant(organization_id, identity)
            if decision.allowed:
                continue
            organization = self.catalog.get(organization_id)
            violations.append(
                Violation(
                    organization_id=organization_id,
                    organization_name=organization.name if organization else organization_id,
                    reason=decision.reason or "License limit reached",
                    limit=decision.limit,
                    current=decision.current,
                )
            )
        return ChangeSetDecision(allowed=not violations, violations=violations)

    def validate_change_set(
        self,
        before: Mapping[SubscriptionKey, bool] | None,
        after: Mapping[SubscriptionKey, bool] | None,
        identity: SubscriberIdentity,
    ) -> ChangeSetDecision:
        return self.check_organizations(newly_admitted_organizations(before, after), identity)

    def validate_invitation(
        self,
        email: str,
        targets: Mapping[SubscriptionKey, bool],
    ) -> ChangeSetDecision:
        # An existing subscriber already active somewhere is exempt there via can_grant.
        return self.check_organizations(active_organizations(targets), SubscriberIdentity(email=email))
