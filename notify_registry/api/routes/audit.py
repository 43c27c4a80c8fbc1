from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.agents.audit_service import AuditAlreadyRunningError, AuditRunner
from notify_registry.api.dependencies import get_audit_runner
from notify_registry.core.audit import AuditReport, ReconciliationAudit, StaleKey
from notify_registry.core.auth import AuthContext, require_super_admin
from notify_registry.core.db import get_db_session
from notify_registry.core.gateway import PersistenceError
from notify_registry.core.remediation import (
    ConfirmationRequiredError,
    RemediationExecutor,
    RemediationResult,
)
from notify_registry.schemas.audit import (
    AuditReportResponse,
    AuditStatusResponse,
    OrphanResponse,
    RemediationRequest,
    RemediationResponse,
    ScanProgressResponse,
    StaleInvitationResponse,
    StaleKeyResponse,
    StaleSubscriptionResponse,
)

router = APIRouter(prefix="/audit", tags=["audit"])


def _stale_keys(stale_keys: tuple[StaleKey, ...]) -> list[StaleKeyResponse]:
    return [
        StaleKeyResponse(
            organization_id=item.key.organization_id,
            feed_id=item.key.feed_id,
            reason=item.reason,
        )
        for item in stale_keys
    ]


def _report_response(report: AuditReport) -> AuditReportResponse:
    return AuditReportResponse(
        orphans=[
            OrphanResponse(subscriber_id=item.subscriber_id, email=item.email, reason=item.reason)
            for item in report.orphans
        ],
        stale_subscriptions=[
            StaleSubscriptionResponse(
                subscriber_id=item.subscriber_id,
                email=item.email,
                stale_keys=_stale_keys(item.stale_keys),
            )
            for item in report.stale_subscriptions
        ],
        stale_invitations=[
            StaleInvitationResponse(email=item.email, stale_keys=_stale_keys(item.stale_keys))
            for item in report.stale_invitations
        ],
        scanned=report.scanned,
        unchecked=list(report.unchecked),
        unknown=list(report.unknown),
        valid_key_count=report.valid_key_count,
        completed_at=report.completed_at,
    )


def _status_response(audit: ReconciliationAudit) -> AuditStatusResponse:
    return AuditStatusResponse(
        state=audit.state.value,
        diagnostic=audit.diagnostic,
        progress=ScanProgressResponse(current=audit.progress.current, total=audit.progress.total),
        started_at=audit.started_at,
        finished_at=audit.finished_at,
        report=_report_response(audit.report) if audit.report is not None else None,
    )


def _remediation_response(result: RemediationResult) -> RemediationResponse:
    return RemediationResponse(
        requested=result.requested,
        affected_records=result.affected_records,
        removed_keys=result.removed_keys,
    )


def _require_report(runner: AuditRunner) -> AuditReport:
    report = runner.completed_report()
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No completed audit report is available",
        )
    return report


@router.post("/runs/current", response_model=AuditStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_audit(
    auth: AuthContext = Depends(require_super_admin),
    runner: AuditRunner = Depends(get_audit_runner),
) -> AuditStatusResponse:
    if not auth.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Operator token carries no email for the identity self-check",
        )
    try:
        audit = runner.start(auth.email)
    except AuditAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _status_response(audit)


@router.get("/runs/current", response_model=AuditStatusResponse)
async def get_audit_status(
    _: AuthContext = Depends(require_super_admin),
    runner: AuditRunner = Depends(get_audit_runner),
) -> AuditStatusResponse:
    if runner.audit is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No audit has been run")
    return _status_response(runner.audit)


@router.delete("/runs/current", response_model=AuditStatusResponse)
async def cancel_audit(
    _: AuthContext = Depends(require_super_admin),
    runner: AuditRunner = Depends(get_audit_runner),
) -> AuditStatusResponse:
    audit = runner.audit
    if audit is None or not runner.cancel():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No audit is running")
    return _status_response(audit)


@router.post("/remediation/orphans", response_model=RemediationResponse)
async def remediate_orphans(
    payload: RemediationRequest,
    _: AuthContext = Depends(require_super_admin),
    runner: AuditRunner = Depends(get_audit_runner),
    session: AsyncSession = Depends(get_db_session),
) -> RemediationResponse:
    report = _require_report(runner)
    try:
        result = await RemediationExecutor(session).delete_orphans(report.orphans, confirmed=payload.confirm)
    except ConfirmationRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _remediation_response(result)


@router.post("/remediation/stale-keys", response_model=RemediationResponse)
async def remediate_stale_keys(
    payload: RemediationRequest,
    _: AuthContext = Depends(require_super_admin),
    runner: AuditRunner = Depends(get_audit_runner),
    session: AsyncSession = Depends(get_db_session),
) -> RemediationResponse:
    report = _require_report(runner)
    try:
        result = await RemediationExecutor(session).strip_stale_keys(
            report.stale_subscriptions,
            confirmed=payload.confirm,
        )
    except ConfirmationRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _remediation_response(result)


@router.post("/remediation/stale-invitation-keys", response_model=RemediationResponse)
async def remediate_stale_invitation_keys(
    payload: RemediationRequest,
    _: AuthContext = Depends(require_super_admin),
    runner: AuditRunner = Depends(get_audit_runner),
    session: AsyncSession = Depends(get_db_session),
) -> RemediationResponse:
    report = _require_report(runner)
    try:
        result = await RemediationExecutor(session).strip_stale_invitation_keys(
            report.stale_invitations,
            confirmed=payload.confirm,
        )
    except ConfirmationRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _remediation_response(result)
