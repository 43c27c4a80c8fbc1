from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from notify_registry.agents.directory_feed import DirectoryFeedAgent
from notify_registry.api.dependencies import get_directory_feed
from notify_registry.core.admission import Violation
from notify_registry.core.auth import (
    AuthContext,
    ensure_organization_access,
    require_auth_context,
    require_super_admin,
    scoped_organization,
)
from notify_registry.core.db import get_db_session
from notify_registry.core.directory import DirectoryEntry
from notify_registry.core.gateway import (
    InvitationMetadata,
    InvitationNotFoundError,
    MutationResult,
    PersistenceError,
    SubscriberDisabledError,
    SubscriberNotFoundError,
    SubscriptionGateway,
    UnknownTargetError,
)
from notify_registry.core.records import SubscriptionKey
from notify_registry.schemas.subscribers import (
    DirectoryEntryResponse,
    DisabledUpdateRequest,
    InvitationClaimRequest,
    InvitationCreateRequest,
    MutationResponse,
    SubscriptionEntry,
    SubscriptionUpdateRequest,
    ViolationResponse,
)

router = APIRouter(tags=["subscribers"])


def entries_to_map(entries: list[SubscriptionEntry]) -> dict[SubscriptionKey, bool]:
    return {SubscriptionKey(entry.organization_id, entry.feed_id): entry.active for entry in entries}


def _entries(subscriptions: dict[SubscriptionKey, bool]) -> list[SubscriptionEntry]:
    return [
        SubscriptionEntry(organization_id=key.organization_id, feed_id=key.feed_id, active=active)
        for key, active in sorted(subscriptions.items())
    ]


def _violations(violations: list[Violation]) -> list[ViolationResponse]:
    return [
        ViolationResponse(
            organization_id=violation.organization_id,
            organization_name=violation.organization_name,
            reason=violation.reason,
            limit=violation.limit,
            current=violation.current,
        )
        for violation in violations
    ]


def _entry_response(entry: DirectoryEntry) -> DirectoryEntryResponse:
    if entry.kind == "subscriber" and entry.subscriber is not None:
        return DirectoryEntryResponse(
            kind="subscriber",
            id=entry.subscriber.id,
            email=entry.email,
            subscriptions=_entries(dict(entry.subscriber.subscriptions)),
            disabled=entry.subscriber.disabled,
        )
    if entry.kind != "invitation" or entry.invitation is None:
        raise ValueError(f"Incomplete {entry.kind} entry")
    return DirectoryEntryResponse(
        kind="invitation",
        id=entry.invitation.email,
        email=entry.email,
        subscriptions=_entries(dict(entry.invitation.subscriptions)),
        status=entry.invitation.status,
        organization_name=entry.invitation.organization_name,
        feed_count=entry.invitation.feed_count,
    )


def _mutation_response(result: MutationResult, action: str) -> MutationResponse:
    if not result.applied:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": f"Cannot {action}: license limit exceeded",
                "violations": [violation.model_dump() for violation in _violations(result.violations)],
            },
        )
    return MutationResponse(applied=True, violations=_violations(result.violations))


@router.get("/subscribers", response_model=list[DirectoryEntryResponse])
async def list_directory(
    organization_id: str | None = Query(default=None),
    auth: AuthContext = Depends(require_auth_context),
    feed: DirectoryFeedAgent = Depends(get_directory_feed),
) -> list[DirectoryEntryResponse]:
    scope = scoped_organization(auth, organization_id)
    return [_entry_response(entry) for entry in feed.directory.merged_list(scope)]


@router.put("/subscribers/{subscriber_id}/subscriptions", response_model=MutationResponse)
async def update_subscriptions(
    subscriber_id: str,
    payload: SubscriptionUpdateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: AsyncSession = Depends(get_db_session),
) -> MutationResponse:
    scope = scoped_organization(auth, None)
    gateway = SubscriptionGateway(session)
    try:
        result = await gateway.apply_subscription_edit(
            subscriber_id,
            entries_to_map(payload.subscriptions),
            organization_scope=scope,
        )
    except UnknownTargetError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except SubscriberNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscriber not found") from exc
    except SubscriberDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _mutation_response(result, "save")


@router.patch("/subscribers/{subscriber_id}/disabled", response_model=MutationResponse)
async def update_disabled(
    subscriber_id: str,
    payload: DisabledUpdateRequest,
    _: AuthContext = Depends(require_super_admin),
    session: AsyncSession = Depends(get_db_session),
) -> MutationResponse:
    gateway = SubscriptionGateway(session)
    try:
        result = await gateway.set_disabled(subscriber_id, payload.disabled)
    except SubscriberNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscriber not found") from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _mutation_response(result, "update subscriber")


@router.post("/invitations", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    payload: InvitationCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: AsyncSession = Depends(get_db_session),
) -> MutationResponse:
    targets = entries_to_map(payload.subscriptions)
    for organization_id in {key.organization_id for key in targets}:
        ensure_organization_access(auth, organization_id)

    gateway = SubscriptionGateway(session)
    try:
        result = await gateway.create_invitation(
            payload.email,
            targets,
            InvitationMetadata(
                organization_id=payload.organization_id,
                organization_name=payload.organization_name,
                feed_name=payload.feed_name,
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _mutation_response(result, "send invite")


@router.post("/invitations/{email}/claim", response_model=MutationResponse)
async def claim_invitation(
    email: str,
    payload: InvitationClaimRequest,
    _: AuthContext = Depends(require_super_admin),
    session: AsyncSession = Depends(get_db_session),
) -> MutationResponse:
    gateway = SubscriptionGateway(session)
    try:
        result = await gateway.claim_invitation(payload.subscriber_id, email)
    except (InvitationNotFoundError, SubscriberNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SubscriberDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MutationResponse(applied=result.applied, violations=_violations(result.violations))


@router.delete("/invitations/{email}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invitation(
    email: str,
    _: AuthContext = Depends(require_super_admin),
    session: AsyncSession = Depends(get_db_session),
) -> Response:
    gateway = SubscriptionGateway(session)
    try:
        await gateway.delete_invitation(email)
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
