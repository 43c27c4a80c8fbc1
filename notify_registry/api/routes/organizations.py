from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from notify_registry.agents.directory_feed import DirectoryFeedAgent
from notify_registry.api.dependencies import get_directory_feed
from notify_registry.core.admission import AdmissionController, SubscriberIdentity
from notify_registry.core.auth import AuthContext, ensure_organization_access, require_auth_context
from notify_registry.schemas.subscribers import (
    AdmissionCheckRequest,
    GrantDecisionResponse,
    LicenseUsageResponse,
)

router = APIRouter(prefix="/organizations", tags=["organizations"])


@router.get("/{organization_id}/license", response_model=LicenseUsageResponse)
async def get_license_usage(
    organization_id: str,
    auth: AuthContext = Depends(require_auth_context),
    feed: DirectoryFeedAgent = Depends(get_directory_feed),
) -> LicenseUsageResponse:
    ensure_organization_access(auth, organization_id)
    organization = feed.catalog.get(organization_id)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

    usage = feed.directory.license_usage(organization)
    return LicenseUsageResponse(
        organization_id=organization.id,
        organization_name=organization.name,
        license_type=usage.license_type,
        label=usage.label,
        limit=usage.limit,
        current=usage.current,
        remaining=usage.remaining,
    )


@router.post("/{organization_id}/admission-check", response_model=GrantDecisionResponse)
async def check_admission(
    organization_id: str,
    payload: AdmissionCheckRequest,
    auth: AuthContext = Depends(require_auth_context),
    feed: DirectoryFeedAgent = Depends(get_directory_feed),
) -> GrantDecisionResponse:
    """Advisory pre-flight; the write path re-checks under the organization lock."""
    ensure_organization_access(auth, organization_id)
    controller = AdmissionController(feed.directory, feed.catalog)
    decision = controller.can_grant(
        organization_id,
        SubscriberIdentity(subscriber_id=payload.subscriber_id, email=payload.email),
    )
    return GrantDecisionResponse(
        allowed=decision.allowed,
        organization_id=decision.organization_id,
        license_type=decision.license_type,
        limit=decision.limit,
        current=decision.current,
        remaining=decision.remaining,
        reason=decision.reason,
    )
