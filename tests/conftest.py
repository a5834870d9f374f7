# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import json
import time
from typing import Any, Callable
from urllib.parse import parse_qs

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_sso.config import OIDCClientConfig
from coreason_sso.models import OIDCSession
from coreason_sso.provisioner import InMemoryCatalogCredentialStore, InMemoryUserRepository
from coreason_sso.validator import unverified_header

BASE_URL = "https://idp.example.org"
ISSUER = "https://idp.example.org"
CLIENT_ID = "portal-client"
CLIENT_SECRET = "portal-secret"
DISCOVERY_PATH = "/.well-known/openid-configuration"


class FakeProvider:
    """
    A minimal OpenID provider served through httpx.MockTransport.

    Responses can be swapped per test; every request is recorded.
    """

    def __init__(self, jwks: dict[str, Any]) -> None:
        self.requests: list[httpx.Request] = []
        self.discovery: Any = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{BASE_URL}/authorize",
            "token_endpoint": f"{BASE_URL}/token",
            "userinfo_endpoint": f"{BASE_URL}/userinfo",
            "jwks_uri": f"{BASE_URL}/jwks",
            "end_session_endpoint": f"{BASE_URL}/logout",
            "scopes_supported": ["openid", "profile", "email"],
        }
        self.discovery_status = 200
        self.jwks: Any = jwks
        self.jwks_status = 200
        self.token_status = 200
        self.token_body: Any = {"access_token": "access-1", "token_type": "Bearer"}
        self.userinfo_status = 200
        self.userinfo_body: Any = {
            "sub": "user-1",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "email": "ada@example.org",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == DISCOVERY_PATH:
            return self._json(self.discovery_status, self.discovery)
        if path == "/jwks":
            return self._json(self.jwks_status, self.jwks)
        if path == "/token":
            return self._json(self.token_status, self.token_body)
        if path == "/userinfo":
            return self._json(self.userinfo_status, self.userinfo_body)
        return httpx.Response(404, text="not found")

    @staticmethod
    def _json(status: int, body: Any) -> httpx.Response:
        if isinstance(body, (bytes, str)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, content=json.dumps(body).encode("utf-8"))

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


@pytest.fixture
def signing_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, options={"kid": "key-1"}, is_private=True)


@pytest.fixture
def other_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, options={"kid": "key-1"}, is_private=True)


def with_kid(key: Any, kid: str | None) -> Any:
    """Returns a copy of the private `key` under another kid, or without one when `kid` is None."""
    jwk = {k: v for k, v in key.as_dict(is_private=True).items() if k != "kid"}
    if kid is not None:
        jwk["kid"] = kid
    return JsonWebKey.import_key(jwk)


def public_jwk(key: Any, use: str = "sig", alg: str | None = "RS256") -> dict[str, Any]:
    jwk = dict(key.as_dict(is_private=False))
    jwk["use"] = use
    if alg:
        jwk["alg"] = alg
    return jwk


@pytest.fixture
def jwks(signing_key: Any) -> dict[str, Any]:
    return {"keys": [public_jwk(signing_key)]}


@pytest.fixture
def provider(jwks: dict[str, Any]) -> FakeProvider:
    return FakeProvider(jwks)


@pytest.fixture
def config() -> OIDCClientConfig:
    return OIDCClientConfig(url=BASE_URL, client_id=CLIENT_ID, client_secret=CLIENT_SECRET)


@pytest.fixture
def session() -> OIDCSession:
    return OIDCSession()


@pytest.fixture
def users() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def credentials() -> InMemoryCatalogCredentialStore:
    return InMemoryCatalogCredentialStore()


@pytest.fixture
def make_id_token(signing_key: Any) -> Callable[..., str]:
    """Returns a factory for signed identity tokens with sensible default claims."""

    def _make(
        key: Any = None,
        headers: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-1",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        for name in [k for k, v in claims.items() if v is None]:
            del claims[name]
        if headers is None:
            headers = {"alg": "RS256", "kid": "key-1"}
        token = jwt.encode(headers, claims, key or signing_key).decode("utf-8")
        # authlib writes the signing key's own kid into the header
        assert unverified_header(token).get("kid") == headers.get("kid"), "signing key kid differs from header kid"
        return token

    return _make
