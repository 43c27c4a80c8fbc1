from __future__ import annotations

import time
from dataclasses import dataclass, field

import requests
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from notify_registry.core.config import settings

bearer_scheme = HTTPBearer(auto_error=True)

SUPER_ADMIN_ROLE = "super_admin"


@dataclass(slots=True)
class AuthContext:
    subject: str
    email: str | None = None
    org_id: str | None = None
    claims: dict = field(default_factory=dict)


class JwksCache:
    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._jwks: dict | None = None
        self._fetched_at = 0.0

    def get(self, url: str) -> dict:
        now = time.time()
        if self._jwks is None or (now - self._fetched_at) > self.ttl_seconds:
            response = requests.get(url, timeout=5)
            response.raise_for_status()
            self._jwks = response.json()
            self._fetched_at = now
        return self._jwks


jwks_cache = JwksCache()


def _get_signing_key(token: str) -> dict:
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication header",
        ) from exc

    kid = unverified_header.get("kid")
    if not kid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="JWT is missing key id",
        )

    jwks = jwks_cache.get(settings.clerk_jwks_url)
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No matching signing key found",
    )


def _decode_clerk_jwt(token: str) -> dict:
    key = _get_signing_key(token)

    options = {"verify_aud": bool(settings.clerk_audience)}
    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=settings.clerk_issuer,
            audience=settings.clerk_audience or None,
            options=options,
        )
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc


async def require_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> AuthContext:
    claims = _decode_clerk_jwt(credentials.credentials)

    subject = claims.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is missing required claims",
        )

    request.state.auth_claims = claims
    request.state.user_subject = subject

    return AuthContext(
        subject=subject,
        email=claims.get("email") or claims.get("primary_email_address"),
        org_id=claims.get("org_id"),
        claims=claims,
    )


def _is_super_admin(context: AuthContext) -> bool:
    if context.subject in settings.super_admin_subjects():
        return True
    if context.claims.get("role") == SUPER_ADMIN_ROLE:
        return True
    roles = context.claims.get("roles") or []
    return isinstance(roles, list) and SUPER_ADMIN_ROLE in roles


async def require_super_admin(
    context: AuthContext = Depends(require_auth_context),
) -> AuthContext:
    if not _is_super_admin(context):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required",
        )
    return context


def ensure_organization_access(context: AuthContext, organization_id: str) -> None:
    """Organization admins may only act on their own organization."""
    if _is_super_admin(context) or context.org_id == organization_id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not an administrator of this organization",
    )


def scoped_organization(context: AuthContext, requested: str | None) -> str | None:
    """Organization filter for directory reads; super admins may see everything."""
    if _is_super_admin(context):
        return requested
    if context.org_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is not bound to an organization",
        )
    if requested is not None and requested != context.org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not an administrator of this organization",
        )
    return context.org_id
