from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class SubscriptionEntry(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)
    feed_id: str = Field(min_length=1, max_length=128)
    active: bool = True


class SubscriptionUpdateRequest(BaseModel):
    subscriptions: list[SubscriptionEntry]


class DisabledUpdateRequest(BaseModel):
    disabled: bool


class InvitationCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    subscriptions: list[SubscriptionEntry] = Field(min_length=1)
    organization_id: str | None = None
    organization_name: str | None = None
    feed_name: str | None = None


class InvitationClaimRequest(BaseModel):
    subscriber_id: str = Field(min_length=1, max_length=128)


class AdmissionCheckRequest(BaseModel):
    subscriber_id: str | None = None
    email: str | None = None


class GrantDecisionResponse(BaseModel):
    allowed: bool
    organization_id: str
    license_type: str | None = None
    limit: int | None = None
    current: int
    remaining: int | None = None
    reason: str | None = None


class ViolationResponse(BaseModel):
    organization_id: str
    organization_name: str
    reason: str
    limit: int | None = None
    current: int


class MutationResponse(BaseModel):
    applied: bool
    violations: list[ViolationResponse] = Field(default_factory=list)


class DirectoryEntryResponse(BaseModel):
    kind: Literal["subscriber", "invitation"]
    id: str
    email: str | None = None
    subscriptions: list[SubscriptionEntry] = Field(default_factory=list)
    disabled: bool = False
    status: str | None = None
    organization_name: str | None = None
    feed_count: int | None = None


class LicenseUsageResponse(BaseModel):
    organization_id: str
    organization_name: str
    license_type: str
    label: str
    limit: int | None = None
    current: int
    remaining: int | None = None
