"""Reconciliation audit over the subscriber registry.

One run walks every subscriber sequentially. For each it asks the identity
provider whether the email still has an account and compares its subscription
keys with the set of feeds that existed when the scan started. Findings are only
released once the whole scan completes.

The run refuses to start scanning unless the identity provider recognizes the
operator's own email. Providers with email enumeration protection answer "no
methods" for every address, which would otherwise flag every subscriber as an
orphan.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from notify_registry.core.config import settings
from notify_registry.core.directory import TargetCatalog
from notify_registry.core.identity import IdentitySource
from notify_registry.core.records import InvitationRecord, SubscriberRecord, SubscriptionKey

logger = logging.getLogger(__name__)

ENUMERATION_PROTECTION_DIAGNOSTIC = (
    "The identity provider returned no sign-in methods for the operator's own account. "
    "Email enumeration protection is most likely enabled, which hides existing accounts; "
    "continuing would report every subscriber as an orphan. Disable enumeration protection "
    "or use a provider API that reports account existence, then run the audit again."
)

ORPHAN_REASON = "No account in the identity provider"


class AuditState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({AuditState.COMPLETED, AuditState.ABORTED, AuditState.CANCELLED})


@dataclass(frozen=True, slots=True)
class OrphanFinding:
    subscriber_id: str
    email: str
    reason: str = ORPHAN_REASON


@dataclass(frozen=True, slots=True)
class StaleKey:
    key: SubscriptionKey
    reason: str


@dataclass(frozen=True, slots=True)
class StaleSubscriptionFinding:
    subscriber_id: str
    email: str | None
    stale_keys: tuple[StaleKey, ...]

    @property
    def keys(self) -> tuple[SubscriptionKey, ...]:
        return tuple(item.key for item in self.stale_keys)


@dataclass(frozen=True, slots=True)
class StaleInvitationFinding:
    email: str
    stale_keys: tuple[StaleKey, ...]

    @property
    def keys(self) -> tuple[SubscriptionKey, ...]:
        return tuple(item.key for item in self.stale_keys)


@dataclass(slots=True)
class ScanProgress:
    current: int = 0
    total: int = 0


@dataclass(frozen=True, slots=True)
class AuditReport:
    orphans: tuple[OrphanFinding, ...]
    stale_subscriptions: tuple[StaleSubscriptionFinding, ...]
    stale_invitations: tuple[StaleInvitationFinding, ...]
    scanned: int
    unchecked: tuple[str, ...]
    unknown: tuple[str, ...]
    valid_key_count: int
    started_at: datetime
    completed_at: datetime

    @property
    def total_findings(self) -> int:
        return len(self.orphans) + len(self.stale_subscriptions) + len(self.stale_invitations)


def stale_keys_for(
    subscriptions: Iterable[SubscriptionKey],
    catalog: TargetCatalog,
) -> tuple[StaleKey, ...]:
    stale: list[StaleKey] = []
    for key in sorted(subscriptions):
        reason = catalog.staleness_reason(key)
        if reason is not None:
            stale.append(StaleKey(key=key, reason=reason))
    return tuple(stale)


ProgressCallback = Callable[[ScanProgress], None]


class ReconciliationAudit:
    def __init__(
        self,
        *,
        identity: IdentitySource,
        operator_email: str,
        load_subscribers: Callable[[], Awaitable[list[SubscriberRecord]]],
        load_catalog: Callable[[], Awaitable[TargetCatalog]],
        load_invitations: Callable[[], Awaitable[list[InvitationRecord]]] | None = None,
        item_delay_seconds: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.identity = identity
        self.operator_email = operator_email
        self._load_subscribers = load_subscribers
        self._load_catalog = load_catalog
        self._load_invitations = load_invitations
        self.item_delay_seconds = (
            settings.audit_item_delay_seconds if item_delay_seconds is None else item_delay_seconds
        )
        self._on_progress = on_progress
        self._cancel_event = asyncio.Event()

        self.state = AuditState.IDLE
        self.diagnostic: str | None = None
        self.progress = ScanProgress()
        self.report: AuditReport | None = None
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self) -> None:
        self._cancel_event.set()

    def _finish(self, state: AuditState, diagnostic: str | None = None) -> None:
        self.state = state
        self.diagnostic = diagnostic
        self.finished_at = datetime.now(timezone.utc)
        if state is not AuditState.COMPLETED:
            self.report = None

    def _report_progress(self, current: int, total: int) -> None:
        self.progress = ScanProgress(current=current, total=total)
        if self._on_progress is not None:
            self._on_progress(self.progress)

    async def _pause(self) -> bool:
        """Courtesy delay between lookups; returns True when cancelled meanwhile."""
        if self.item_delay_seconds <= 0:
            return self._cancel_event.is_set()
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=self.item_delay_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _self_check(self) -> str | None:
        try:
            methods = await self.identity.sign_in_methods(self.operator_email)
        except Exception as exc:
            return f"Identity self-check for {self.operator_email} failed: {exc}"
        if not methods:
            return ENUMERATION_PROTECTION_DIAGNOSTIC
        return None

    async def run(self) -> AuditReport | None:
        if self.state is not AuditState.IDLE:
            raise RuntimeError("An audit run can only be started once")

        self.started_at = datetime.now(timezone.utc)
        self.state = AuditState.INITIALIZING
        try:
            return await self._run()
        except asyncio.CancelledError:
            self._finish(AuditState.CANCELLED)
            logger.info("Reconciliation audit cancelled")
            raise

    async def _run(self) -> AuditReport | None:
        diagnostic = await self._self_check()
        if diagnostic is not None:
            self._finish(AuditState.ABORTED, diagnostic)
            logger.warning("Reconciliation audit aborted: %s", diagnostic)
            return None
        if self._cancel_event.is_set():
            self._finish(AuditState.CANCELLED)
            return None

        try:
            # Taken once so concurrent feed edits cannot shift the scan midway.
            catalog = await self._load_catalog()
            subscribers = list(await self._load_subscribers())
            invitations = list(await self._load_invitations()) if self._load_invitations else []
        except Exception as exc:
            self._finish(AuditState.ABORTED, f"Failed to load registry snapshot: {exc}")
            raise

        self.state = AuditState.SCANNING
        total = len(subscribers)
        logger.info(
            "Reconciliation audit scanning %d subscribers against %d valid feeds",
            total,
            len(catalog.valid_keys),
        )
        self._report_progress(0, total)

        orphans: list[OrphanFinding] = []
        stale: list[StaleSubscriptionFinding] = []
        unchecked: list[str] = []
        unknown: list[str] = []

        for index, subscriber in enumerate(subscribers, start=1):
            if self._cancel_event.is_set():
                self._finish(AuditState.CANCELLED)
                logger.info("Reconciliation audit cancelled at %d/%d", index - 1, total)
                return None

            lookup_failed = False
            if subscriber.email:
                try:
                    methods = await self.identity.sign_in_methods(subscriber.email)
                except Exception as exc:
                    lookup_failed = True
                    logger.warning(
                        "Identity lookup failed for subscriber=%s; treating as unknown: %s",
                        subscriber.id,
                        exc,
                    )
                else:
                    if not methods:
                        orphans.append(OrphanFinding(subscriber_id=subscriber.id, email=subscriber.email))
            else:
                unchecked.append(subscriber.id)

            if lookup_failed:
                unknown.append(subscriber.id)
            else:
                stale_keys = stale_keys_for(subscriber.subscriptions.keys(), catalog)
                if stale_keys:
                    stale.append(
                        StaleSubscriptionFinding(
                            subscriber_id=subscriber.id,
                            email=subscriber.email,
                            stale_keys=stale_keys,
                        )
                    )

            self._report_progress(index, total)
            if index < total and await self._pause():
                self._finish(AuditState.CANCELLED)
                logger.info("Reconciliation audit cancelled at %d/%d", index, total)
                return None

        stale_invitations = [
            StaleInvitationFinding(email=invitation.email, stale_keys=stale_keys)
            for invitation in invitations
            if invitation.status == "pending"
            and (stale_keys := stale_keys_for(invitation.subscriptions.keys(), catalog))
        ]

        self.report = AuditReport(
            orphans=tuple(orphans),
            stale_subscriptions=tuple(stale),
            stale_invitations=tuple(stale_invitations),
            scanned=total,
            unchecked=tuple(unchecked),
            unknown=tuple(unknown),
            valid_key_count=len(catalog.valid_keys),
            started_at=self.started_at or datetime.now(timezone.utc),
            completed_at=datetime.now(timezone.utc),
        )
        self._finish(AuditState.COMPLETED)
        logger.info(
            "Reconciliation audit completed: %d orphans, %d stale subscribers, %d stale invitations, %d unknown",
            len(orphans),
            len(stale),
            len(stale_invitations),
            len(unknown),
        )
        return self.report
