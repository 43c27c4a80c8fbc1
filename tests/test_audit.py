from __future__ import annotations

import asyncio

import pytest

from notify_registry.core.audit import (
    ENUMERATION_PROTECTION_DIAGNOSTIC,
    AuditState,
    ReconciliationAudit,
)
from notify_registry.core.directory import FEED_MISSING, ORGANIZATION_MISSING, TargetCatalog
from notify_registry.core.records import (
    FeedRecord,
    InvitationRecord,
    OrganizationRecord,
    SubscriberRecord,
    SubscriptionKey,
)

OPERATOR = "operator@example.com"
ACME_DAILY = SubscriptionKey("acme", "acme_daily")
ACME_WEEKLY = SubscriptionKey("acme", "acme_weekly")


class _Identity:
    def __init__(self, known: set[str], failing: set[str] | None = None) -> None:
        self.known = known
        self.failing = failing or set()
        self.calls: list[str] = []

    async def sign_in_methods(self, email: str) -> list[str]:
        self.calls.append(email)
        if email in self.failing:
            raise ConnectionError("timeout")
        return ["password"] if email in self.known else []


def _catalog_after_weekly_deleted() -> TargetCatalog:
    return TargetCatalog.build(
        [OrganizationRecord(id="acme", name="Acme", license_type="professional", feeds=(FeedRecord("acme_daily", "Daily"),))]
    )


def _audit(identity: _Identity, subscribers: list[SubscriberRecord], invitations=None, **kwargs) -> ReconciliationAudit:  # noqa: ANN001
    async def _subscribers() -> list[SubscriberRecord]:
        return subscribers

    async def _catalog() -> TargetCatalog:
        return _catalog_after_weekly_deleted()

    async def _invitations() -> list[InvitationRecord]:
        return list(invitations or [])

    return ReconciliationAudit(
        identity=identity,
        operator_email=OPERATOR,
        load_subscribers=_subscribers,
        load_catalog=_catalog,
        load_invitations=_invitations,
        item_delay_seconds=kwargs.pop("item_delay_seconds", 0),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_self_check_guard_aborts_with_zero_findings() -> None:
    identity = _Identity(known=set())
    audit = _audit(identity, [SubscriberRecord(id="u1", email="a@example.com", subscriptions={ACME_DAILY: True})])

    report = await audit.run()

    assert report is None
    assert audit.state is AuditState.ABORTED
    assert audit.diagnostic == ENUMERATION_PROTECTION_DIAGNOSTIC
    assert audit.report is None
    assert identity.calls == [OPERATOR]


@pytest.mark.asyncio
async def test_self_check_failure_aborts_with_reason() -> None:
    identity = _Identity(known={OPERATOR}, failing={OPERATOR})
    audit = _audit(identity, [])

    await audit.run()

    assert audit.state is AuditState.ABORTED
    assert "timeout" in (audit.diagnostic or "")


@pytest.mark.asyncio
async def test_orphan_detection() -> None:
    identity = _Identity(known={OPERATOR, "kept@example.com"})
    subscribers = [
        SubscriberRecord(id="u1", email="kept@example.com", subscriptions={ACME_DAILY: True}),
        SubscriberRecord(id="u2", email="gone@example.com", subscriptions={ACME_DAILY: True}),
    ]
    audit = _audit(identity, subscribers)

    report = await audit.run()

    assert audit.state is AuditState.COMPLETED
    assert report is not None
    assert [(orphan.subscriber_id, orphan.email) for orphan in report.orphans] == [("u2", "gone@example.com")]
    assert report.stale_subscriptions == ()
    assert report.scanned == 2


@pytest.mark.asyncio
async def test_stale_key_detection() -> None:
    identity = _Identity(known={OPERATOR, "a@example.com", "b@example.com"})
    subscribers = [
        SubscriberRecord(id="u1", email="a@example.com", subscriptions={ACME_DAILY: True, ACME_WEEKLY: True}),
        SubscriberRecord(id="u2", email="b@example.com", subscriptions={ACME_DAILY: True}),
    ]
    report = await _audit(identity, subscribers).run()

    assert report is not None
    assert len(report.stale_subscriptions) == 1
    finding = report.stale_subscriptions[0]
    assert finding.subscriber_id == "u1"
    assert finding.keys == (ACME_WEEKLY,)
    assert finding.stale_keys[0].reason == FEED_MISSING
    assert report.valid_key_count == 1


@pytest.mark.asyncio
async def test_failed_lookup_is_unknown_and_scan_continues() -> None:
    identity = _Identity(known={OPERATOR, "c@example.com"}, failing={"b@example.com"})
    subscribers = [
        SubscriberRecord(id="u1", email="a@example.com", subscriptions={}),
        SubscriberRecord(id="u2", email="b@example.com", subscriptions={ACME_WEEKLY: True}),
        SubscriberRecord(id="u3", email="c@example.com", subscriptions={}),
    ]
    report = await _audit(identity, subscribers).run()

    assert report is not None
    assert report.unknown == ("u2",)
    assert [orphan.subscriber_id for orphan in report.orphans] == ["u1"]
    assert report.stale_subscriptions == ()
    assert identity.calls[-1] == "c@example.com"


@pytest.mark.asyncio
async def test_subscriber_without_email_is_unchecked_but_scanned_for_stale_keys() -> None:
    identity = _Identity(known={OPERATOR})
    subscribers = [SubscriberRecord(id="u1", email=None, subscriptions={SubscriptionKey("initech", "ops"): True})]
    report = await _audit(identity, subscribers).run()

    assert report is not None
    assert report.unchecked == ("u1",)
    assert report.orphans == ()
    assert report.stale_subscriptions[0].stale_keys[0].reason == ORGANIZATION_MISSING


@pytest.mark.asyncio
async def test_stale_invitation_keys_are_reported() -> None:
    identity = _Identity(known={OPERATOR})
    invitations = [
        InvitationRecord(email="inv@example.com", subscriptions={ACME_DAILY: True, ACME_WEEKLY: True}),
        InvitationRecord(email="ok@example.com", subscriptions={ACME_DAILY: True}),
        InvitationRecord(email="done@example.com", subscriptions={ACME_WEEKLY: True}, status="claimed"),
    ]
    report = await _audit(identity, [], invitations).run()

    assert report is not None
    assert [(finding.email, finding.keys) for finding in report.stale_invitations] == [
        ("inv@example.com", (ACME_WEEKLY,))
    ]


@pytest.mark.asyncio
async def test_progress_reported_per_subscriber() -> None:
    identity = _Identity(known={OPERATOR, "a@example.com", "b@example.com"})
    seen: list[tuple[int, int]] = []
    subscribers = [
        SubscriberRecord(id="u1", email="a@example.com"),
        SubscriberRecord(id="u2", email="b@example.com"),
    ]
    audit = _audit(identity, subscribers, on_progress=lambda progress: seen.append((progress.current, progress.total)))

    await audit.run()

    assert seen == [(0, 2), (1, 2), (2, 2)]
    assert audit.progress.current == 2


@pytest.mark.asyncio
async def test_cancel_during_scan_discards_findings() -> None:
    identity = _Identity(known={OPERATOR})
    subscribers = [SubscriberRecord(id=f"u{i}", email=f"u{i}@example.com") for i in range(5)]
    audit = _audit(identity, subscribers, item_delay_seconds=5)

    task = asyncio.create_task(audit.run())
    while audit.progress.current < 1:
        await asyncio.sleep(0)
    audit.cancel()
    result = await asyncio.wait_for(task, timeout=1)

    assert result is None
    assert audit.state is AuditState.CANCELLED
    assert audit.report is None
    assert audit.finished is True


@pytest.mark.asyncio
async def test_run_only_once() -> None:
    audit = _audit(_Identity(known={OPERATOR}), [])
    await audit.run()
    with pytest.raises(RuntimeError):
        await audit.run()


@pytest.mark.asyncio
async def test_snapshot_load_failure_aborts() -> None:
    async def _boom() -> list[SubscriberRecord]:
        raise ConnectionError("db down")

    async def _catalog() -> TargetCatalog:
        return TargetCatalog.empty()

    audit = ReconciliationAudit(
        identity=_Identity(known={OPERATOR}),
        operator_email=OPERATOR,
        load_subscribers=_boom,
        load_catalog=_catalog,
        item_delay_seconds=0,
    )
    with pytest.raises(ConnectionError):
        await audit.run()
    assert audit.state is AuditState.ABORTED
