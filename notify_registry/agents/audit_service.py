from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from notify_registry.agents.health import AgentHealth
from notify_registry.core.audit import AuditReport, AuditState, ReconciliationAudit
from notify_registry.core.db import AsyncSessionLocal
from notify_registry.core.directory import TargetCatalog
from notify_registry.core.identity import ClerkIdentityClient, IdentitySource
from notify_registry.core.records import (
    InvitationRecord,
    OrganizationRecord,
    SubscriberRecord,
    subscribers_from_rows,
)
from notify_registry.core.repositories import (
    InvitationRepository,
    OrganizationRepository,
    SubscriberRepository,
)

logger = logging.getLogger(__name__)


class AuditAlreadyRunningError(RuntimeError):
    pass


class AuditRunner:
    """Owns the single reconciliation audit a process may run at a time."""

    def __init__(
        self,
        identity_factory: Callable[[], IdentitySource] = ClerkIdentityClient,
        session_factory: Callable[[], Any] = AsyncSessionLocal,
        item_delay_seconds: float | None = None,
    ) -> None:
        self.health = AgentHealth(name="audit-runner", healthy=True, ready=True)
        self.audit: ReconciliationAudit | None = None
        self._identity_factory = identity_factory
        self._session_factory = session_factory
        self._item_delay_seconds = item_delay_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self.audit is not None and not self.audit.finished

    async def _load_subscribers(self) -> list[SubscriberRecord]:
        async with self._session_factory() as session:
            return subscribers_from_rows(await SubscriberRepository(session).list())

    async def _load_invitations(self) -> list[InvitationRecord]:
        async with self._session_factory() as session:
            rows = await InvitationRepository(session).list_pending()
        return [InvitationRecord.from_row(row) for row in rows]

    async def _load_catalog(self) -> TargetCatalog:
        async with self._session_factory() as session:
            rows = await OrganizationRepository(session).list()
        return TargetCatalog.build(OrganizationRecord.from_row(row) for row in rows)

    def start(self, operator_email: str) -> ReconciliationAudit:
        if self.active:
            raise AuditAlreadyRunningError("A reconciliation audit is already running")

        audit = ReconciliationAudit(
            identity=self._identity_factory(),
            operator_email=operator_email,
            load_subscribers=self._load_subscribers,
            load_catalog=self._load_catalog,
            load_invitations=self._load_invitations,
            item_delay_seconds=self._item_delay_seconds,
        )
        self.audit = audit
        self._task = asyncio.create_task(self._execute(audit))
        logger.info("Reconciliation audit started by %s", operator_email)
        return audit

    async def _execute(self, audit: ReconciliationAudit) -> None:
        self.health.mark_event()
        try:
            await audit.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.health.mark_error(exc)
            logger.exception("Reconciliation audit failed")
            return
        self.health.incr(f"runs_{audit.state.value}")

    def cancel(self) -> bool:
        if self.audit is None or not self.active:
            return False
        self.audit.cancel()
        return True

    def completed_report(self) -> AuditReport | None:
        if self.audit is None or self.audit.state is not AuditState.COMPLETED:
            return None
        return self.audit.report

    async def shutdown(self) -> None:
        if self.audit is not None:
            self.audit.cancel()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task


audit_runner = AuditRunner()
