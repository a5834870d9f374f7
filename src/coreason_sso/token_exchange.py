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
TokenExchanger component for the authorization-code-to-token exchange.
"""

import base64

import httpx
from pydantic import ValidationError

from coreason_sso.config import OIDCClientConfig
from coreason_sso.exceptions import TechnicalAuthError
from coreason_sso.models import TokenSet
from coreason_sso.oidc_provider import ProviderMetadataResolver
from coreason_sso.transport import bounded_request
from coreason_sso.utils.logger import logger


def basic_authorization(client_id: str, client_secret: str) -> str:
    """Builds an HTTP Basic Authorization header value for the client credentials."""
    credentials = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


class TokenExchanger:
    """
    Exchanges authorization codes at the provider's token endpoint.

    Codes are single use at the provider, so each exchanged code's TokenSet is
    kept for the lifetime of this object and returned on a repeated call.
    """

    def __init__(self, config: OIDCClientConfig, resolver: ProviderMetadataResolver, client: httpx.Client) -> None:
        self.config = config
        self.resolver = resolver
        self.client = client
        self._tokens: dict[str, TokenSet] = {}

    def uses_basic_auth(self) -> bool:
        """
        True when the client should authenticate with HTTP Basic: the provider
        advertises `client_secret_basic`, or advertises no methods at all.
        """
        methods = self.resolver.get_metadata().token_endpoint_auth_methods_supported
        return methods is None or "client_secret_basic" in methods

    def exchange(self, code: str, redirect_uri: str | None) -> TokenSet:
        """
        Exchanges `code` for tokens.

        Args:
            code: The authorization code from the callback.
            redirect_uri: The redirect URI the flow was started with.

        Returns:
            TokenSet: The token endpoint's response.

        Raises:
            TechnicalAuthError: On transport failure, a non-200 status, an undecodable
                body or an `error` field in the response.
        """
        if code in self._tokens:
            return self._tokens[code]

        url = self.resolver.get_metadata().token_endpoint
        client_id = self.config.client_id
        client_secret = self.config.client_secret.get_secret_value()

        params = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or "",
            "client_id": client_id,
        }
        headers = {"Accept": "application/json"}
        if self.uses_basic_auth():
            headers["Authorization"] = basic_authorization(client_id, client_secret)
        else:
            params["client_secret"] = client_secret

        try:
            response = bounded_request(self.client, "POST", url, data=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Cannot get request token from {url}: {e.__class__.__name__}: {e}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        if response.status_code != 200:
            logger.error(f"Failed to get request token: Unexpected status {response.status_code}: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        try:
            token_set = TokenSet.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Failed to get request token: Unable to decode response: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        if token_set.error:
            logger.error(f"Failed to get request token: {token_set.error_description or token_set.error}")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        self._tokens[code] = token_set
        return token_set
