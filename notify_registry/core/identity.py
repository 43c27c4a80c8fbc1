from __future__ import annotations

import asyncio
from typing import Any, Protocol

import requests

from notify_registry.core.config import settings


class IdentityLookupError(RuntimeError):
    pass


class IdentitySource(Protocol):
    async def sign_in_methods(self, email: str) -> list[str]:
        """Sign-in methods registered for ``email``; empty means not found."""
        ...


def _methods_for_user(user: dict[str, Any]) -> list[str]:
    methods: list[str] = []
    if user.get("password_enabled"):
        methods.append("password")
    for account in user.get("external_accounts") or []:
        provider = account.get("provider")
        if provider and provider not in methods:
            methods.append(provider)
    for address in user.get("email_addresses") or []:
        strategy = (address.get("verification") or {}).get("strategy")
        if strategy and strategy not in methods:
            methods.append(strategy)
    # A matched account is never reported as "no methods".
    return methods or ["account"]


class ClerkIdentityClient:
    """Existence checks against the Clerk backend API."""

    def __init__(self, secret_key: str | None = None, base_url: str | None = None) -> None:
        self.secret_key = settings.clerk_secret_key if secret_key is None else secret_key
        self.base_url = (base_url or settings.clerk_api_base_url).rstrip("/")

    def fetch_sign_in_methods(self, email: str) -> list[str]:
        if not self.secret_key:
            raise IdentityLookupError("CLERK_SECRET_KEY is not configured")

        try:
            response = requests.get(
                f"{self.base_url}/users",
                params={"email_address": email},
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=settings.identity_request_timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise IdentityLookupError(f"Identity lookup failed for {email}: {exc}") from exc

        users = body.get("data", []) if isinstance(body, dict) else body
        methods: list[str] = []
        for user in users or []:
            for method in _methods_for_user(user):
                if method not in methods:
                    methods.append(method)
        return methods

    async def sign_in_methods(self, email: str) -> list[str]:
        return await asyncio.to_thread(self.fetch_sign_in_methods, email)
