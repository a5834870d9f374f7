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
Configuration for the coreason-sso package.
"""

from typing import Any
from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_sso.exceptions import AdminConfigurationError
from coreason_sso.utils.logger import logger

DEFAULT_SCOPE = "openid profile email"

DEFAULT_ALGORITHMS = [
    "RS256",
    "RS384",
    "RS512",
    "PS256",
    "PS384",
    "PS512",
    "ES256",
    "ES384",
    "ES512",
]

# Provider metadata keys that may be set statically for deployments without discovery
STATIC_METADATA_KEYS = (
    "authorization_endpoint",
    "token_endpoint",
    "token_endpoint_auth_methods_supported",
    "userinfo_endpoint",
    "issuer",
    "jwks_uri",
)


def is_absolute_url(value: str) -> bool:
    """Returns True for an absolute http(s) URL with a host."""
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class OIDCClientConfig(BaseSettings):
    """
    Configuration settings for the OpenID Connect relying party.

    Attributes:
        url (str): Base URL of the provider; discovery lives under /.well-known/openid-configuration.
        client_id (str): The client identifier registered with the provider.
        client_secret (SecretStr): The client secret registered with the provider.
        scope (str): Space separated scopes to request.
        attributes (dict[str, str]): Local attribute to claim name overrides.
        username_prefix (str): Prefix prepended to the subject to form the local username.
        logout (str | bool | None): Falsy disables provider logout, a URL is used as the
            end-session endpoint, any other value uses the discovered endpoint.
        callback_auth_method (str | None): When set, appended to the callback target as
            `auth_method=<value>` so a login handler serving several methods can route it.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_SSO_",
        case_sensitive=False,
    )

    url: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: SecretStr
    scope: str = DEFAULT_SCOPE
    attributes: dict[str, str] = Field(default_factory=dict)
    username_prefix: str = ""
    logout: str | bool | None = None
    callback_auth_method: str | None = None

    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    issuer: str | None = None
    jwks_uri: str | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None

    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all provider requests.")
    allowed_algorithms: list[str] = Field(default_factory=lambda: list(DEFAULT_ALGORITHMS), min_length=1)
    clock_skew_leeway: int = Field(default=0, ge=0)
    jwks_cache_ttl: int = Field(default=3600, gt=0)
    jwks_refresh_cooldown: float = Field(default=30.0, ge=0)
    require_kid: bool = False
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    unsafe_local_dev: bool = False

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """Strips surrounding whitespace; trailing slashes are kept for the discovery join."""
        return v.strip()

    @field_validator("logout", mode="before")
    @classmethod
    def parse_logout_flag(cls, v: Any) -> Any:
        """
        Reads boolean-looking strings (as they arrive from the environment) as booleans,
        so that e.g. COREASON_SSO_LOGOUT=false disables provider logout.
        """
        if isinstance(v, str):
            flag = v.strip().lower()
            if flag in ("", "0", "false", "no", "off"):
                return False
            if flag in ("1", "true", "yes", "on"):
                return True
            return v.strip()
        return v

    @field_validator("client_secret")
    @classmethod
    def require_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("client_secret must not be empty")
        return v

    @model_validator(mode="after")
    def validate_https(self) -> "OIDCClientConfig":
        """
        Ensures that the provider URL uses HTTPS, unless strictly opted out for local dev.
        """
        if not is_absolute_url(self.url):
            raise ValueError(f"Provider url must be an absolute URL, got '{self.url}'")
        if self.url.startswith("http://") and not self.unsafe_local_dev:
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return self

    @property
    def discovery_url(self) -> str:
        """The provider's OpenID configuration document URL."""
        base = self.url if self.url.endswith("/") else f"{self.url}/"
        return f"{base}.well-known/openid-configuration"

    def static_metadata(self) -> dict[str, Any]:
        """Returns the statically configured provider metadata, skipping empty values."""
        values = {key: getattr(self, key) for key in STATIC_METADATA_KEYS}
        return {key: value for key, value in values.items() if value}


def load_config(**values: Any) -> OIDCClientConfig:
    """
    Builds the configuration from keyword values and `COREASON_SSO_*` environment variables.

    Raises:
        AdminConfigurationError: If a required setting is missing or invalid.
    """
    try:
        return OIDCClientConfig(**values)
    except ValidationError as e:
        missing = [".".join(str(part) for part in err["loc"]) for err in e.errors() if err["type"] == "missing"]
        if missing:
            logger.error(f"One or more OpenID Connect settings are missing: {', '.join(missing)}")
        else:
            logger.error(f"Invalid OpenID Connect configuration: {e}")
        raise AdminConfigurationError(AdminConfigurationError.message_key) from e
