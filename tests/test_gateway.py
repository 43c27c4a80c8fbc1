from __future__ import annotations

import asyncio
from collections import defaultdict
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.exc import OperationalError

from notify_registry.core.gateway import (
    InvitationMetadata,
    InvitationNotFoundError,
    PersistenceError,
    SubscriberDisabledError,
    SubscriberNotFoundError,
    SubscriptionGateway,
    UnknownTargetError,
)
from notify_registry.core.directory import DirectorySnapshot
from notify_registry.core.records import SubscriptionKey, subscribers_from_rows

ACME_DAILY = SubscriptionKey("acme", "acme_daily")
ACME_ALERTS = SubscriptionKey("acme", "acme_alerts")
GLOBEX_NEWS = SubscriptionKey("globex", "gx_news")

ORGANIZATIONS = {
    "acme": SimpleNamespace(
        id="acme",
        name="Acme",
        license_type="professional",
        feeds=[{"id": "acme_daily"}, {"id": "acme_alerts"}],
    ),
    "globex": SimpleNamespace(id="globex", name="Globex", license_type="organization", feeds=[{"id": "gx_news"}]),
}


def _row(subscriber_id: str, subscriptions: dict, email: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        id=subscriber_id,
        email=email or f"{subscriber_id}@example.com",
        subscriptions=subscriptions,
        disabled=False,
        last_login_at=None,
    )


class _FakeSubscribers:
    def __init__(self, rows: list[SimpleNamespace]) -> None:
        self.rows = {row.id: row for row in rows}

    async def get_for_update(self, subscriber_id: str):  # noqa: ANN201
        return self.rows.get(subscriber_id)

    async def list_in_organizations(self, organization_ids):  # noqa: ANN001, ANN201
        ids = set(organization_ids)
        return [row for row in self.rows.values() if ids & set(row.subscriptions)]


class _FakeInvitations:
    def __init__(self, rows: list[SimpleNamespace] | None = None) -> None:
        self.rows = {row.email: row for row in rows or []}
        self.put_calls: list[tuple[str, dict]] = []

    async def get_for_update(self, email: str):  # noqa: ANN201
        return self.rows.get(email)

    async def put(self, email: str, **values):  # noqa: ANN003, ANN201
        self.put_calls.append((email, values))
        row = SimpleNamespace(email=email, **values)
        self.rows[email] = row
        return row

    async def delete(self, email: str) -> bool:
        return self.rows.pop(email, None) is not None


class _FakeOrganizations:
    async def get_many(self, organization_ids):  # noqa: ANN001, ANN201
        return [ORGANIZATIONS[org_id] for org_id in organization_ids if org_id in ORGANIZATIONS]


def _session() -> Mock:
    session = Mock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


def _gateway(rows: list[SimpleNamespace], invitations: list[SimpleNamespace] | None = None):
    session = _session()
    notifier = AsyncMock()
    gateway = SubscriptionGateway(session, notifier=notifier)
    gateway.subscribers = _FakeSubscribers(rows)  # type: ignore[assignment]
    gateway.invitations = _FakeInvitations(invitations)  # type: ignore[assignment]
    gateway.organizations = _FakeOrganizations()  # type: ignore[assignment]
    return gateway, session, notifier


def _full_acme() -> list[SimpleNamespace]:
    return [_row(f"u{i}", {"acme": {"acme_daily": True}}) for i in range(1, 4)]


@pytest.mark.asyncio
async def test_edit_denied_over_quota_writes_nothing() -> None:
    newcomer = _row("new", {})
    gateway, session, notifier = _gateway(_full_acme() + [newcomer])

    result = await gateway.apply_subscription_edit("new", {ACME_DAILY: True})

    assert result.applied is False
    assert [violation.organization_id for violation in result.violations] == ["acme"]
    assert newcomer.subscriptions == {}
    session.rollback.assert_awaited()
    session.flush.assert_not_awaited()
    notifier.assert_not_awaited()
    # The organization lock was taken before re-reading its subscribers.
    session.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_edit_by_counted_subscriber_skips_lock_and_commits() -> None:
    rows = _full_acme()
    gateway, session, notifier = _gateway(rows)

    result = await gateway.apply_subscription_edit("u1", {ACME_DAILY: True, ACME_ALERTS: True})

    assert result.applied is True
    assert rows[0].subscriptions == {"acme": {"acme_daily": True, "acme_alerts": True}}
    session.execute.assert_not_awaited()
    session.commit.assert_awaited_once()
    notifier.assert_awaited_once_with("subscribers", ["u1"])


@pytest.mark.asyncio
async def test_edit_scoped_to_organization_keeps_other_organizations() -> None:
    row = _row("u1", {"acme": {"acme_daily": True}, "globex": {"gx_news": True}})
    gateway, _, _ = _gateway([row])

    result = await gateway.apply_subscription_edit(
        "u1",
        {ACME_DAILY: False, ACME_ALERTS: True},
        organization_scope="acme",
    )

    assert result.applied is True
    assert row.subscriptions == {
        "acme": {"acme_daily": False, "acme_alerts": True},
        "globex": {"gx_news": True},
    }


@pytest.mark.asyncio
async def test_edit_scoped_rejects_keys_outside_scope() -> None:
    gateway, _, _ = _gateway([_row("u1", {})])
    with pytest.raises(ValueError):
        await gateway.apply_subscription_edit("u1", {GLOBEX_NEWS: True}, organization_scope="acme")


@pytest.mark.asyncio
async def test_edit_unknown_subscriber() -> None:
    gateway, session, _ = _gateway([])
    with pytest.raises(SubscriberNotFoundError):
        await gateway.apply_subscription_edit("ghost", {ACME_DAILY: True})
    session.rollback.assert_awaited()


@pytest.mark.asyncio
async def test_persistence_failure_propagates_as_persistence_error() -> None:
    gateway, session, notifier = _gateway([_row("u1", {"acme": {"acme_daily": True}})])
    session.commit.side_effect = OperationalError("UPDATE", {}, Exception("connection lost"))

    with pytest.raises(PersistenceError):
        await gateway.apply_subscription_edit("u1", {ACME_DAILY: True, ACME_ALERTS: True})

    session.rollback.assert_awaited()
    notifier.assert_not_awaited()


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_committed_write() -> None:
    gateway, session, notifier = _gateway([_row("u1", {"acme": {"acme_daily": True}})])
    notifier.side_effect = ConnectionError("redis down")

    result = await gateway.apply_subscription_edit("u1", {ACME_DAILY: False})

    assert result.applied is True
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_disable_clears_subscriptions_in_same_write() -> None:
    row = _row("u1", {"acme": {"acme_daily": True}})
    gateway, session, _ = _gateway([row])

    result = await gateway.set_disabled("u1", True)

    assert result.applied is True
    assert row.disabled is True
    assert row.subscriptions == {}
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_invitation_hard_blocks_full_organization() -> None:
    gateway, session, _ = _gateway(_full_acme())

    result = await gateway.create_invitation("Invitee@Example.com", {ACME_DAILY: True})

    assert result.applied is False
    assert gateway.invitations.put_calls == []
    session.rollback.assert_awaited()


@pytest.mark.asyncio
async def test_create_invitation_stores_normalized_email_and_metadata() -> None:
    gateway, session, notifier = _gateway([])

    result = await gateway.create_invitation(
        " Invitee@Example.com ",
        {ACME_DAILY: True, ACME_ALERTS: True, GLOBEX_NEWS: False},
        InvitationMetadata(feed_name="Daily"),
    )

    assert result.applied is True
    email, values = gateway.invitations.put_calls[0]
    assert email == "invitee@example.com"
    assert values["subscriptions"] == {"acme": {"acme_daily": True, "acme_alerts": True}}
    assert values["organization_id"] == "acme"
    assert values["organization_name"] == "Acme"
    assert values["feed_count"] == 2
    assert values["status"] == "pending"
    session.commit.assert_awaited_once()
    notifier.assert_awaited_once_with("invitations", ["invitee@example.com"])


@pytest.mark.asyncio
async def test_create_invitation_requires_active_target() -> None:
    gateway, _, _ = _gateway([])
    with pytest.raises(ValueError):
        await gateway.create_invitation("a@example.com", {ACME_DAILY: False})
    with pytest.raises(ValueError):
        await gateway.create_invitation("", {ACME_DAILY: True})


@pytest.mark.asyncio
async def test_claim_invitation_drops_full_organizations() -> None:
    newcomer = _row("new", {}, email="invitee@example.com")
    invitation = SimpleNamespace(
        email="invitee@example.com",
        subscriptions={"acme": {"acme_daily": True}, "globex": {"gx_news": True}},
        status="pending",
        claimed_at=None,
        claimed_by=None,
    )
    gateway, _, _ = _gateway(_full_acme() + [newcomer], [invitation])

    result = await gateway.claim_invitation("new", "INVITEE@example.com")

    assert result.applied is True
    assert [violation.organization_id for violation in result.violations] == ["acme"]
    assert newcomer.subscriptions == {"globex": {"gx_news": True}}
    assert invitation.status == "claimed"
    assert invitation.claimed_by == "new"


@pytest.mark.asyncio
async def test_claim_missing_invitation() -> None:
    gateway, _, _ = _gateway([_row("u1", {})])
    with pytest.raises(InvitationNotFoundError):
        await gateway.claim_invitation("u1", "nobody@example.com")


@pytest.mark.asyncio
async def test_delete_invitation() -> None:
    invitation = SimpleNamespace(email="invitee@example.com")
    gateway, _, notifier = _gateway([], [invitation])

    assert await gateway.delete_invitation("Invitee@example.com") is True
    assert await gateway.delete_invitation("invitee@example.com") is False
    notifier.assert_awaited_once_with("invitations", ["invitee@example.com"])


@pytest.mark.asyncio
async def test_edit_rejects_unknown_feed() -> None:
    row = _row("u1", {"acme": {"acme_daily": True}})
    gateway, session, notifier = _gateway([row])

    with pytest.raises(UnknownTargetError, match="acme/no_such_feed"):
        await gateway.apply_subscription_edit("u1", {ACME_DAILY: True, SubscriptionKey("acme", "no_such_feed"): True})

    assert row.subscriptions == {"acme": {"acme_daily": True}}
    session.rollback.assert_awaited()
    session.commit.assert_not_awaited()
    notifier.assert_not_awaited()


@pytest.mark.asyncio
async def test_edit_keeps_existing_stale_key_and_allows_deactivating_it() -> None:
    row = _row("u1", {"acme": {"acme_daily": True, "retired": True}})
    gateway, _, _ = _gateway([row])

    result = await gateway.apply_subscription_edit(
        "u1",
        {ACME_DAILY: True, SubscriptionKey("acme", "retired"): False},
    )

    assert result.applied is True
    assert row.subscriptions == {"acme": {"acme_daily": True, "retired": False}}


@pytest.mark.asyncio
async def test_create_invitation_rejects_unknown_feed() -> None:
    gateway, session, _ = _gateway([])

    with pytest.raises(UnknownTargetError):
        await gateway.create_invitation("invitee@example.com", {SubscriptionKey("initech", "tps"): True})

    assert gateway.invitations.put_calls == []
    session.rollback.assert_awaited()


@pytest.mark.asyncio
async def test_edit_of_disabled_subscriber_refused() -> None:
    row = _row("u1", {})
    row.disabled = True
    gateway, session, notifier = _gateway([row])

    with pytest.raises(SubscriberDisabledError):
        await gateway.apply_subscription_edit("u1", {GLOBEX_NEWS: True})

    assert row.subscriptions == {}
    assert row.disabled is True
    session.rollback.assert_awaited()
    notifier.assert_not_awaited()


@pytest.mark.asyncio
async def test_edit_of_disabled_subscriber_may_keep_map_inactive() -> None:
    row = _row("u1", {})
    row.disabled = True
    gateway, _, _ = _gateway([row])

    result = await gateway.apply_subscription_edit("u1", {GLOBEX_NEWS: False})

    assert result.applied is True
    assert row.subscriptions == {"globex": {"gx_news": False}}


@pytest.mark.asyncio
async def test_claim_requires_matching_subscriber_email() -> None:
    stranger = _row("u9", {}, email="stranger@example.com")
    invitation = SimpleNamespace(
        email="invitee@example.com",
        subscriptions={"globex": {"gx_news": True}},
        status="pending",
        claimed_at=None,
        claimed_by=None,
    )
    gateway, session, _ = _gateway([stranger], [invitation])

    with pytest.raises(InvitationNotFoundError):
        await gateway.claim_invitation("u9", "invitee@example.com")

    assert stranger.subscriptions == {}
    assert invitation.status == "pending"
    assert invitation.claimed_by is None
    session.rollback.assert_awaited()


@pytest.mark.asyncio
async def test_claim_skips_feeds_removed_since_invitation() -> None:
    newcomer = _row("new", {}, email="invitee@example.com")
    invitation = SimpleNamespace(
        email="invitee@example.com",
        subscriptions={"globex": {"gx_news": True, "gx_retired": True}},
        status="pending",
        claimed_at=None,
        claimed_by=None,
    )
    gateway, _, _ = _gateway([newcomer], [invitation])

    result = await gateway.claim_invitation("new", "invitee@example.com")

    assert result.applied is True
    assert newcomer.subscriptions == {"globex": {"gx_news": True}}


class _AdvisoryLocks:
    """Per-organization locks held until the owning session commits or rolls back."""

    def __init__(self) -> None:
        self.locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.held: dict[int, list[asyncio.Lock]] = defaultdict(list)

    async def lock(self, session, organization_ids) -> None:  # noqa: ANN001
        for organization_id in sorted(set(organization_ids)):
            lock = self.locks[organization_id]
            await lock.acquire()
            self.held[id(session)].append(lock)

    def release(self, session) -> None:  # noqa: ANN001
        for lock in self.held.pop(id(session), []):
            lock.release()


class _YieldingSubscribers(_FakeSubscribers):
    def __init__(self, rows: list[SimpleNamespace], locks: _AdvisoryLocks) -> None:
        super().__init__(rows)
        self.locks = locks

    async def list_in_organizations(self, organization_ids):  # noqa: ANN001, ANN201
        assert all(self.locks.locks[org_id].locked() for org_id in organization_ids)
        await asyncio.sleep(0)
        return await super().list_in_organizations(organization_ids)


@pytest.mark.asyncio
async def test_concurrent_edits_cannot_overfill_organization(monkeypatch: pytest.MonkeyPatch) -> None:
    locks = _AdvisoryLocks()
    monkeypatch.setattr("notify_registry.core.gateway.lock_organizations", locks.lock)
    rows = [
        _row("u1", {"acme": {"acme_daily": True}}),
        _row("u2", {"acme": {"acme_daily": True}}),
        _row("n1", {}),
        _row("n2", {}),
    ]
    store = _YieldingSubscribers(rows, locks)

    def make_gateway() -> SubscriptionGateway:
        session = _session()
        session.commit = AsyncMock(side_effect=lambda: locks.release(session))
        session.rollback = AsyncMock(side_effect=lambda: locks.release(session))
        gateway = SubscriptionGateway(session, notifier=AsyncMock())
        gateway.subscribers = store  # type: ignore[assignment]
        gateway.invitations = _FakeInvitations()  # type: ignore[assignment]
        gateway.organizations = _FakeOrganizations()  # type: ignore[assignment]
        return gateway

    first, second = await asyncio.gather(
        make_gateway().apply_subscription_edit("n1", {ACME_DAILY: True}),
        make_gateway().apply_subscription_edit("n2", {ACME_DAILY: True}),
    )

    assert sorted([first.applied, second.applied]) == [False, True]
    assert DirectorySnapshot.build(subscribers_from_rows(rows)).subscriber_count("acme") == 3
    assert not locks.locks["acme"].locked()
