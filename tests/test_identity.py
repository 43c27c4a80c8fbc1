from __future__ import annotations

import pytest
import requests

from notify_registry.core import identity
from notify_registry.core.identity import ClerkIdentityClient, IdentityLookupError


class _Resp:
    def __init__(self, body: object, status_error: Exception | None = None) -> None:
        self._body = body
        self._status_error = status_error

    def raise_for_status(self) -> None:
        if self._status_error is not None:
            raise self._status_error

    def json(self) -> object:
        return self._body


@pytest.mark.asyncio
async def test_sign_in_methods_collects_strategies(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def _get(url: str, params: dict, headers: dict, timeout: int):  # noqa: ANN202
        called.update(url=url, params=params, headers=headers, timeout=timeout)
        return _Resp(
            [
                {
                    "password_enabled": True,
                    "external_accounts": [{"provider": "oauth_google"}],
                    "email_addresses": [{"verification": {"strategy": "email_code"}}],
                }
            ]
        )

    monkeypatch.setattr(identity.requests, "get", _get)
    client = ClerkIdentityClient(secret_key="sk_test", base_url="https://clerk.test/v1/")

    methods = await client.sign_in_methods("a@example.com")

    assert methods == ["password", "oauth_google", "email_code"]
    assert called["url"] == "https://clerk.test/v1/users"
    assert called["params"] == {"email_address": "a@example.com"}
    assert called["headers"] == {"Authorization": "Bearer sk_test"}


def test_existing_account_without_strategies_is_not_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(identity.requests, "get", lambda *args, **kwargs: _Resp({"data": [{"id": "user_1"}]}))
    assert ClerkIdentityClient(secret_key="sk").fetch_sign_in_methods("a@example.com") == ["account"]


def test_unknown_email_returns_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(identity.requests, "get", lambda *args, **kwargs: _Resp([]))
    assert ClerkIdentityClient(secret_key="sk").fetch_sign_in_methods("nobody@example.com") == []


def test_http_failure_raises_lookup_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        identity.requests,
        "get",
        lambda *args, **kwargs: _Resp({}, status_error=requests.HTTPError("500")),
    )
    with pytest.raises(IdentityLookupError):
        ClerkIdentityClient(secret_key="sk").fetch_sign_in_methods("a@example.com")


def test_missing_secret_key_raises_lookup_error() -> None:
    with pytest.raises(IdentityLookupError):
        ClerkIdentityClient(secret_key="").fetch_sign_in_methods("a@example.com")
