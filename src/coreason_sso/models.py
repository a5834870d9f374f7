# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
Data models for the coreason-sso package.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, StrictInt


class LoginPhase(StrEnum):
    """Where a login attempt stands from the orchestrator's point of view."""

    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    VALIDATING = "validating"
    PROVISIONED = "provisioned"
    FAILED = "failed"


class ProviderMetadata(BaseModel):
    """
    The provider's endpoint configuration, from discovery or static configuration.

    The five endpoint fields are required; any additional discovery fields are kept.
    This model is frozen: it is never mutated once assembled.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    authorization_endpoint: str = Field(..., min_length=1)
    token_endpoint: str = Field(..., min_length=1)
    userinfo_endpoint: str = Field(..., min_length=1)
    issuer: str = Field(..., min_length=1)
    jwks_uri: str = Field(..., min_length=1)
    end_session_endpoint: str | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None


class TokenSet(BaseModel):
    """
    Response from the token endpoint.

    Attributes:
        access_token (str | None): The access token used against the userinfo endpoint.
        id_token (str | None): The signed identity token.
        token_type (str | None): The type of the access token (e.g. "Bearer").
        expires_in (int | None): Lifetime in seconds of the access token.
        error (str | None): OAuth error code, when the provider refused the exchange.
        error_description (str | None): Human readable error detail.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    access_token: str | None = None
    id_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    error: str | None = None
    error_description: str | None = None


class IdentityClaims(BaseModel):
    """
    Security relevant view of a verified identity token payload.

    `exp` must be an integer when present; other claims pass through untouched.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    iss: str
    aud: str | list[str]
    sub: str | None = None
    exp: StrictInt | None = None
    nonce: str | None = None


class UserInfo(BaseModel):
    """Claims returned by the userinfo endpoint."""

    model_config = ConfigDict(frozen=True, extra="allow")

    sub: str = Field(..., min_length=1)

    def get_claim(self, name: str) -> Any:
        """Returns a claim by name, including claims outside the declared fields."""
        if name in type(self).model_fields:
            return getattr(self, name)
        return (self.model_extra or {}).get(name)


class OIDCSession(BaseModel):
    """
    The per-browser-session values this package reads and writes.

    The hosting application owns persistence: load it with `OIDCSession(**bag)` and
    store it back with `model_dump()`.

    Attributes:
        oidc_state (str | None): Anti-forgery value echoed on the callback.
        oidc_nonce (str | None): Replay protection value bound into the identity token.
        oidc_id_token (str | None): Identity token of the last login, for logout hints.
        oidc_last_uri (str | None): Redirect URI the login flow was started with.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    oidc_state: str | None = None
    oidc_nonce: str | None = None
    oidc_id_token: str | None = None
    oidc_last_uri: str | None = None

    def __repr__(self) -> str:
        # Session secrets MUST NOT appear in reprs
        return (
            f"OIDCSession(oidc_state={'<SET>' if self.oidc_state else None}, "
            f"oidc_nonce={'<SET>' if self.oidc_nonce else None}, "
            f"oidc_id_token={'<SET>' if self.oidc_id_token else None}, "
            f"oidc_last_uri={self.oidc_last_uri!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class LocalIdentity(BaseModel):
    """
    The local user record keyed by the provider-prefixed subject.

    Reference shape of the entity returned by a `UserRepositoryProtocol`.
    """

    model_config = ConfigDict(validate_assignment=True)

    username: str
    firstname: str | None = None
    lastname: str | None = None
    email: str | None = None
    cat_id: str | None = None
    cat_username: str | None = None
    cat_password: SecretStr | None = None
    college: str | None = None
    major: str | None = None
    home_library: str | None = None

    def __repr__(self) -> str:
        # PII fields MUST be redacted in __repr__
        return (
            "LocalIdentity(username='<REDACTED>', "
            "email='<REDACTED>', "
            f"cat_username={'<SET>' if self.cat_username else None}, "
            f"home_library={self.home_library!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()
