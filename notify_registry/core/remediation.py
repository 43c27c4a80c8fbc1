from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.core.audit import (
    OrphanFinding,
    StaleInvitationFinding,
    StaleSubscriptionFinding,
)
from notify_registry.core.events import ChangeNotifier, publish_registry_change
from notify_registry.core.gateway import PersistenceError
from notify_registry.core.records import SubscriptionKey, decode_subscriptions, encode_subscriptions
from notify_registry.core.repositories import InvitationRepository, SubscriberRepository

logger = logging.getLogger(__name__)


class ConfirmationRequiredError(ValueError):
    pass


@dataclass(slots=True)
class RemediationResult:
    requested: int
    affected_records: int
    removed_keys: int = 0


def _group_keys(findings: Iterable[tuple[str, Sequence[SubscriptionKey]]]) -> dict[str, set[SubscriptionKey]]:
    grouped: dict[str, set[SubscriptionKey]] = {}
    for record_id, keys in findings:
        grouped.setdefault(record_id, set()).update(keys)
    return grouped


class RemediationExecutor:
    """Destructive cleanup of audit findings, each operation in one transaction.

    Every operation is idempotent: findings that were already cleaned up are
    skipped without error.
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

    async def _commit(self, action: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError(f"Failed to {action}") from exc

    async def _notify(self, collection: str, ids: Iterable[str]) -> None:
        ids = list(ids)
        if self.notifier is None or not ids:
            return
        try:
            await self.notifier(collection, ids)
        except Exception:
            logger.exception("Failed to publish %s change", collection)

    async def delete_orphans(self, orphans: Sequence[OrphanFinding], *, confirmed: bool) -> RemediationResult:
        if not confirmed:
            raise ConfirmationRequiredError("Deleting orphaned subscribers requires confirmation")

        ids = sorted({finding.subscriber_id for finding in orphans})
        try:
            removed = await self.subscribers.delete_many(ids)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Failed to delete orphaned subscribers") from exc
        await self._commit("delete orphaned subscribers")

        logger.info("Deleted %d orphaned subscribers (%d requested)", removed, len(ids))
        if removed:
            await self._notify("subscribers", ids)
        return RemediationResult(requested=len(ids), affected_records=removed)

    async def strip_stale_keys(
        self,
        findings: Sequence[StaleSubscriptionFinding],
        *,
        confirmed: bool,
    ) -> RemediationResult:
        if not confirmed:
            raise ConfirmationRequiredError("Removing stale subscription keys requires confirmation")

        grouped = _group_keys((finding.subscriber_id, finding.keys) for finding in findings)
        changed: list[str] = []
        removed_keys = 0
        try:
            for row in await self.subscribers.list_for_update(grouped):
                current = decode_subscriptions(row.subscriptions)
                remaining = {key: active for key, active in current.items() if key not in grouped[row.id]}
                if len(remaining) == len(current):
                    continue
                removed_keys += len(current) - len(remaining)
                row.subscriptions = encode_subscriptions(remaining)
                changed.append(row.id)
            await self.session.flush()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Failed to remove stale subscription keys") from exc
        await self._commit("remove stale subscription keys")

        logger.info("Removed %d stale keys from %d subscribers", removed_keys, len(changed))
        await self._notify("subscribers", changed)
        return RemediationResult(requested=len(grouped), affected_records=len(changed), removed_keys=removed_keys)

    async def strip_stale_invitation_keys(
        self,
        findings: Sequence[StaleInvitationFinding],
        *,
        confirmed: bool,
    ) -> RemediationResult:
        if not confirmed:
            raise ConfirmationRequiredError("Removing stale invitation keys requires confirmation")

        grouped = _group_keys((finding.email, finding.keys) for finding in findings)
        changed: list[str] = []
        removed_keys = 0
        try:
            for row in await self.invitations.list_for_update(grouped):
                current = decode_subscriptions(row.subscriptions)
                remaining = {key: active for key, active in current.items() if key not in grouped[row.email]}
                if len(remaining) == len(current):
                    continue
                removed_keys += len(current) - len(remaining)
                row.subscriptions = encode_subscriptions(remaining)
                row.feed_count = sum(1 for active in remaining.values() if active)
                changed.append(row.email)
            await self.session.flush()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Failed to remove stale invitation keys") from exc
        await self._commit("remove stale invitation keys")

        logger.info("Removed %d stale keys from %d invitations", removed_keys, len(changed))
        await self._notify("invitations", changed)
        return RemediationResult(requested=len(grouped), affected_records=len(changed), removed_keys=removed_keys)
