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
UserInfoClient component for fetching claims from the userinfo endpoint.
"""

import httpx
from pydantic import ValidationError

from coreason_sso.exceptions import TechnicalAuthError
from coreason_sso.models import UserInfo
from coreason_sso.oidc_provider import ProviderMetadataResolver
from coreason_sso.transport import bounded_request
from coreason_sso.utils.logger import logger


class UserInfoClient:
    """Fetches the authenticated user's claims with a bearer access token."""

    def __init__(self, resolver: ProviderMetadataResolver, client: httpx.Client) -> None:
        self.resolver = resolver
        self.client = client

    def fetch(self, access_token: str) -> UserInfo:
        """
        Raises:
            TechnicalAuthError: On transport failure, a non-200 status or an undecodable body.
        """
        url = self.resolver.get_metadata().userinfo_endpoint
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = bounded_request(self.client, "GET", url, params={"schema": "openid"}, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Failed to get user info: Request failed: {e.__class__.__name__}: {e}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        if response.status_code != 200:
            logger.error(f"Failed to get user info: Unexpected status code {response.status_code}: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        try:
            document = response.json()
        except ValueError as e:
            logger.error(f"Failed to get user info: Unable to decode JSON from response: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        try:
            return UserInfo.model_validate(document)
        except ValidationError as e:
            logger.error(f"Failed to get user info: Unexpected claims shape: {e}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e
