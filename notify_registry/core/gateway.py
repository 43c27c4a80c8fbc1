from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.core.admission import (
    AdmissionController,
    ChangeSetDecision,
    SubscriberIdentity,
    Violation,
    newly_admitted_organizations,
)
from notify_registry.core.db import lock_organizations
from notify_registry.core.directory import DirectorySnapshot, TargetCatalog
from notify_registry.core.events import ChangeNotifier, publish_registry_change
from notify_registry.core.records import (
    OrganizationRecord,
    SubscriptionKey,
    decode_subscriptions,
    encode_subscriptions,
    normalize_email,
    subscribers_from_rows,
)
from notify_registry.core.repositories import (
    InvitationRepository,
    OrganizationRepository,
    SubscriberRepository,
)

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    pass


class SubscriberNotFoundError(LookupError):
    pass


class InvitationNotFoundError(LookupError):
    pass


class SubscriberDisabledError(RuntimeError):
    pass


class UnknownTargetError(ValueError):
    pass


@dataclass(slots=True)
class MutationResult:
    applied: bool
    violations: list[Violation] = field(default_factory=list)


@dataclass(slots=True)
class InvitationMetadata:
    organization_id: str | None = None
    organization_name: str | None = None
    feed_name: str | None = None


class SubscriptionGateway:
    """Writes subscriber and invitation changes after admission control.

    Every write that admits a subscriber into an organization locks that
    organization for the rest of the transaction and re-reads its subscribers
    from storage, so two concurrent admissions cannot both see a free seat.
    """

    def __init__(
        self,
        session: AsyncSession,
        notifier: ChangeNotifier | None = publish_registry_change,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.subscribers = SubscriberRepository(session)
        self.invitations = InvitationRepository(session)
        self.organizations = OrganizationRepository(session)

    @contextlib.asynccontextmanager
    async def _write(self, action: str) -> AsyncIterator[None]:
        try:
            yield
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError(f"Failed to {action}") from exc
        except BaseException:
            await self.session.rollback()
            raise

    async def _notify(self, collection: str, ids: Iterable[str]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(collection, list(ids))
        except Exception:
            # The write is committed; feeds catch up on their next reload.
            logger.exception("Failed to publish %s change", collection)

    async def _locked_admission(self, organization_ids: set[str]) -> AdmissionController:
        await lock_organizations(self.session, organization_ids)
        rows = await self.subscribers.list_in_organizations(organization_ids)
        organizations = await self.organizations.get_many(organization_ids)
        return AdmissionController(
            DirectorySnapshot.build(subscribers_from_rows(rows)),
            TargetCatalog.build(OrganizationRecord.from_row(row) for row in organizations),
        )

    async def _catalog_for(self, organization_ids: Iterable[str]) -> TargetCatalog:
        rows = await self.organizations.get_many(organization_ids)
        return TargetCatalog.build(OrganizationRecord.from_row(row) for row in rows)

    async def _require_valid_targets(
        self,
        before: Mapping[SubscriptionKey, bool],
        after: Mapping[SubscriptionKey, bool],
    ) -> None:
        """Reject keys being switched on for feeds that do not exist."""
        activated = {key for key, active in after.items() if active and not before.get(key)}
        if not activated:
            return
        catalog = await self._catalog_for({key.organization_id for key in activated})
        unknown = sorted(key for key in activated if not catalog.is_valid(key))
        if unknown:
            raise UnknownTargetError("Unknown feeds: " + ", ".join(str(key) for key in unknown))

    async def _admit(
        self,
        before: Mapping[SubscriptionKey, bool],
        after: Mapping[SubscriptionKey, bool],
        identity: SubscriberIdentity,
    ) -> ChangeSetDecision:
        gaining = newly_admitted_organizations(before, after)
        if not gaining:
            return ChangeSetDecision(allowed=True)
        controller = await self._locked_admission(gaining)
        return controller.validate_change_set(before, after, identity)

    async def apply_subscription_edit(
        self,
        subscriber_id: str,
        subscriptions: Mapping[SubscriptionKey, bool],
        *,
        organization_scope: str | None = None,
    ) -> MutationResult:
        """Replace a subscriber's subscription map in one write.

        With ``organization_scope`` only that organization's keys are replaced and
        keys belonging to other organizations are carried over unchanged.
        """
        if organization_scope is not None and any(
            key.organization_id != organization_scope for key in subscriptions
        ):
            raise ValueError(f"Subscriptions outside organization {organization_scope}")

        async with self._write("save subscriptions"):
            row = await self.subscribers.get_for_update(subscriber_id)
            if row is None:
                raise SubscriberNotFoundError(f"Subscriber not found: {subscriber_id}")

            before = decode_subscriptions(row.subscriptions)
            if organization_scope is None:
                new_map = dict(subscriptions)
            else:
                new_map = {key: active for key, active in before.items() if key.organization_id != organization_scope}
                new_map.update(subscriptions)
            if row.disabled and any(new_map.values()):
                raise SubscriberDisabledError(f"Subscriber is disabled: {subscriber_id}")
            await self._require_valid_targets(before, new_map)
            decision = await self._admit(
                before,
                new_map,
                SubscriberIdentity(subscriber_id=row.id, email=row.email),
            )
            if not decision.allowed:
                await self.session.rollback()
                return MutationResult(applied=False, violations=decision.violations)

            row.subscriptions = encode_subscriptions(new_map)
            await self.session.flush()

        await self._notify("subscribers", [subscriber_id])
        return MutationResult(applied=True)

    async def create_invitation(
        self,
        email: str,
        targets: Mapping[SubscriptionKey, bool],
        metadata: InvitationMetadata | None = None,
    ) -> MutationResult:
        normalized = normalize_email(email)
        if normalized is None:
            raise ValueError("Invitation email is required")
        requested = {key: True for key, active in targets.items() if active}
        if not requested:
            raise ValueError("Invitation must target at least one feed")

        metadata = metadata or InvitationMetadata()
        first_key = min(requested)
        async with self._write("create invitation"):
            controller = await self._locked_admission({key.organization_id for key in requested})
            unknown = sorted(key for key in requested if not controller.catalog.is_valid(key))
            if unknown:
                raise UnknownTargetError("Unknown feeds: " + ", ".join(str(key) for key in unknown))
            decision = controller.validate_invitation(normalized, requested)
            if not decision.allowed:
                await self.session.rollback()
                return MutationResult(applied=False, violations=decision.violations)

            organization_id = metadata.organization_id or first_key.organization_id
            organization = controller.catalog.get(organization_id)
            await self.invitations.put(
                normalized,
                subscriptions=encode_subscriptions(requested),
                organization_id=organization_id,
                organization_name=metadata.organization_name or (organization.name if organization else None),
                feed_name=metadata.feed_name,
                feed_count=len(requested),
                status="pending",
                claimed_at=None,
                claimed_by=None,
            )

        await self._notify("invitations", [normalized])
        return MutationResult(applied=True)

    async def set_disabled(self, subscriber_id: str, disabled: bool) -> MutationResult:
        async with self._write("update subscriber status"):
            row = await self.subscribers.get_for_update(subscriber_id)
            if row is None:
                raise SubscriberNotFoundError(f"Subscriber not found: {subscriber_id}")

            before = decode_subscriptions(row.subscriptions)
            after = {} if disabled else before
            decision = await self._admit(
                before,
                after,
                SubscriberIdentity(subscriber_id=row.id, email=row.email),
            )
            if not decision.allowed:
                await self.session.rollback()
                return MutationResult(applied=False, violations=decision.violations)

            row.disabled = disabled
            if disabled:
                row.subscriptions = {}
            await self.session.flush()

        await self._notify("subscribers", [subscriber_id])
        return MutationResult(applied=True)

    async def claim_invitation(self, subscriber_id: str, email: str) -> MutationResult:
        """Apply a pending invitation to a newly registered subscriber.

        Organizations that have filled up since the invitation was sent are
        skipped and reported as violations; the remaining feeds are applied.
        """
        normalized = normalize_email(email)
        if normalized is None:
            raise ValueError("Invitation email is required")

        async with self._write("claim invitation"):
            invitation = await self.invitations.get_for_update(normalized)
            if invitation is None or invitation.status != "pending":
                raise InvitationNotFoundError(f"No pending invitation for {normalized}")
            row = await self.subscribers.get_for_update(subscriber_id)
            if row is None:
                raise SubscriberNotFoundError(f"Subscriber not found: {subscriber_id}")
            if normalize_email(row.email) != normalized:
                raise InvitationNotFoundError(f"No pending invitation for {normalized} on subscriber {subscriber_id}")
            if row.disabled:
                raise SubscriberDisabledError(f"Subscriber is disabled: {subscriber_id}")

            before = decode_subscriptions(row.subscriptions)
            offered = [key for key, active in decode_subscriptions(invitation.subscriptions).items() if active]
            catalog = await self._catalog_for({key.organization_id for key in offered})
            offered = [key for key in offered if catalog.is_valid(key)]
            proposed = dict(before)
            proposed.update({key: True for key in offered})
            decision = await self._admit(
                before,
                proposed,
                SubscriberIdentity(subscriber_id=row.id, email=row.email or normalized),
            )

            rejected = {violation.organization_id for violation in decision.violations}
            after = dict(before)
            after.update({key: True for key in offered if key.organization_id not in rejected})
            row.subscriptions = encode_subscriptions(after)
            invitation.status = "claimed"
            invitation.claimed_at = datetime.now(timezone.utc)
            invitation.claimed_by = subscriber_id
            await self.session.flush()

        if rejected:
            logger.info(
                "Invitation for %s claimed without organizations %s",
                normalized,
                ", ".join(sorted(rejected)),
            )
        await self._notify("subscribers", [subscriber_id])
        await self._notify("invitations", [normalized])
        return MutationResult(applied=True, violations=decision.violations)

    async def delete_invitation(self, email: str) -> bool:
        normalized = normalize_email(email)
        if normalized is None:
            return False
        async with self._write("delete invitation"):
            deleted = await self.invitations.delete(normalized)
        if deleted:
            await self._notify("invitations", [normalized])
        return deleted
