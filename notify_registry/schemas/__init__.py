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
from notify_registry.schemas.subscribers import (
    AdmissionCheckRequest,
    DirectoryEntryResponse,
    DisabledUpdateRequest,
    GrantDecisionResponse,
    InvitationClaimRequest,
    InvitationCreateRequest,
    LicenseUsageResponse,
    MutationResponse,
    SubscriptionEntry,
    SubscriptionUpdateRequest,
    ViolationResponse,
)

__all__ = [
    "AdmissionCheckRequest",
    "AuditReportResponse",
    "AuditStatusResponse",
    "DirectoryEntryResponse",
    "DisabledUpdateRequest",
    "GrantDecisionResponse",
    "InvitationClaimRequest",
    "InvitationCreateRequest",
    "LicenseUsageResponse",
    "MutationResponse",
    "OrphanResponse",
    "RemediationRequest",
    "RemediationResponse",
    "ScanProgressResponse",
    "StaleInvitationResponse",
    "StaleKeyResponse",
    "StaleSubscriptionResponse",
    "SubscriptionEntry",
    "SubscriptionUpdateRequest",
    "ViolationResponse",
]
