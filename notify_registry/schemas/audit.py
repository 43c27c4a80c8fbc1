from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ScanProgressResponse(BaseModel):
    current: int
    total: int


class StaleKeyResponse(BaseModel):
    organization_id: str
    feed_id: str
    reason: str


class OrphanResponse(BaseModel):
    subscriber_id: str
    email: str
    reason: str


class StaleSubscriptionResponse(BaseModel):
    subscriber_id: str
    email: str | None = None
    stale_keys: list[StaleKeyResponse]


class StaleInvitationResponse(BaseModel):
    email: str
    stale_keys: list[StaleKeyResponse]


class AuditReportResponse(BaseModel):
    orphans: list[OrphanResponse]
    stale_subscriptions: list[StaleSubscriptionResponse]
    stale_invitations: list[StaleInvitationResponse]
    scanned: int
    unchecked: list[str]
    unknown: list[str]
    valid_key_count: int
    completed_at: datetime


class AuditStatusResponse(BaseModel):
    state: str
    diagnostic: str | None = None
    progress: ScanProgressResponse
    started_at: datetime | None = None
    finished_at: datetime | None = None
    report: AuditReportResponse | None = None


class RemediationRequest(BaseModel):
    confirm: bool = False


class RemediationResponse(BaseModel):
    requested: int
    affected_records: int
    removed_keys: int = Field(default=0)
