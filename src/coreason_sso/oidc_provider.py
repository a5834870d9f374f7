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
Provider components: endpoint metadata resolution and the signing-key cache.
"""

import time
from typing import Any

import httpx
from pydantic import ValidationError

from coreason_sso.config import OIDCClientConfig
from coreason_sso.exceptions import AdminConfigurationError, KeyNotFoundError, TechnicalAuthError
from coreason_sso.models import ProviderMetadata
from coreason_sso.transport import bounded_request
from coreason_sso.utils.logger import logger

# Key id (or position in the published set when the key has no kid) to JWK
SigningKeySet = dict[str | int, dict[str, Any]]


class ProviderMetadataResolver:
    """
    Resolves the provider's endpoint configuration.

    Discovery is attempted once; on a transport error, a non-200 status or an
    undecodable document the statically configured endpoints are used instead.
    Either way the five required endpoints must be present.
    """

    def __init__(self, config: OIDCClientConfig, client: httpx.Client) -> None:
        self.config = config
        self.client = client
        self._metadata: ProviderMetadata | None = None

    def get_metadata(self) -> ProviderMetadata:
        """
        Returns the provider metadata, resolving it on first use.

        Raises:
            AdminConfigurationError: If required endpoints are missing after discovery and fallback.
        """
        if self._metadata is None:
            document = self._discover()
            if document is None:
                document = self.config.static_metadata()
            self._metadata = self._validate(document)
        return self._metadata

    def _discover(self) -> dict[str, Any] | None:
        """Fetches the discovery document, or returns None when the static fallback applies."""
        url = self.config.discovery_url
        try:
            response = bounded_request(self.client, "GET", url)
        except (httpx.HTTPError, TechnicalAuthError) as e:
            logger.warning(
                f"Provider discovery request to {url} failed ({e.__class__.__name__}: {e}); using static configuration"
            )
            return None

        if response.status_code != 200:
            logger.warning(
                f"Failed to get provider metadata: Unexpected status {response.status_code}: {response.text}; "
                "using static configuration"
            )
            return None

        try:
            document = response.json()
        except ValueError:
            logger.warning(f"Provider metadata from {url} is not JSON: {response.text}; using static configuration")
            return None

        if not isinstance(document, dict):
            logger.warning(f"Provider metadata from {url} is not a JSON object; using static configuration")
            return None
        return document

    def _validate(self, document: dict[str, Any]) -> ProviderMetadata:
        try:
            return ProviderMetadata.model_validate(document)
        except ValidationError as e:
            missing = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            logger.error(f"Missing required provider metadata: {', '.join(missing)}")
            raise AdminConfigurationError(AdminConfigurationError.message_key) from e


class KeySetCache:
    """
    Fetches and caches the provider's signature keys (JWKS).

    Attributes:
        cache_ttl (int): Seconds a fetched key set stays valid.
        refresh_cooldown (float): Minimum seconds between forced refreshes.
        require_kid (bool): Refuse kid-less lookups when more than one key is cached.
    """

    def __init__(
        self,
        resolver: ProviderMetadataResolver,
        client: httpx.Client,
        cache_ttl: int = 3600,
        refresh_cooldown: float = 30.0,
        require_kid: bool = False,
    ) -> None:
        self.resolver = resolver
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self.require_kid = require_kid
        self._keys: SigningKeySet | None = None
        self._last_update: float = 0.0

    def get_signing_keys(self, force_refresh: bool = False) -> SigningKeySet:
        """
        Returns the cached signature keys, fetching them when absent or stale.

        Args:
            force_refresh: Refetch even if the cache is fresh, unless the cooldown is active.

        Raises:
            TechnicalAuthError: If the key set cannot be fetched or decoded.
        """
        current_time = time.time()
        if self._keys is not None:
            age = current_time - self._last_update
            if not force_refresh and age < self.cache_ttl:
                return self._keys
            if force_refresh and age < self.refresh_cooldown:
                logger.warning("JWKS refresh cooldown active. Returning cached keys despite force_refresh request.")
                return self._keys

        self._keys = self._fetch_keys()
        self._last_update = current_time
        return self._keys

    def get_key(self, kid: str | None) -> dict[str, Any]:
        """
        Returns the JWK for `kid`, or the first key when no kid is given.

        An unknown kid triggers one forced refresh before failing, which covers key
        rotation at the provider.

        Raises:
            KeyNotFoundError: If no matching key exists.
            TechnicalAuthError: If the key set cannot be fetched.
        """
        keys = self.get_signing_keys()
        if kid is not None:
            if kid not in keys:
                logger.info(f"JWK '{kid}' not cached, refreshing signing keys")
                keys = self.get_signing_keys(force_refresh=True)
            if kid not in keys:
                logger.error(f"JWK '{kid}' not found")
                raise KeyNotFoundError(KeyNotFoundError.message_key)
            return keys[kid]

        if not keys:
            logger.error("Provider publishes no signature keys")
            raise KeyNotFoundError(KeyNotFoundError.message_key)
        if len(keys) > 1:
            if self.require_kid:
                logger.error(f"Token has no 'kid' and the provider publishes {len(keys)} signature keys")
                raise KeyNotFoundError(KeyNotFoundError.message_key)
            logger.warning(f"Token has no 'kid' but the provider publishes {len(keys)} signature keys; using the first")
        return next(iter(keys.values()))

    def _fetch_keys(self) -> SigningKeySet:
        jwks_uri = self.resolver.get_metadata().jwks_uri
        try:
            response = bounded_request(self.client, "GET", jwks_uri)
        except httpx.HTTPError as e:
            logger.error(f"Cannot get JWKs from {jwks_uri}: {e.__class__.__name__}: {e}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        if response.status_code != 200:
            logger.error(f"Failed to get JWKs: Unexpected status code {response.status_code}: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        try:
            document = response.json()
        except ValueError as e:
            logger.error(f"Failed to get JWKs: Unable to decode JSON from response: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        entries = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(entries, list):
            logger.error(f"Failed to get JWKs: No 'keys' list in response: {response.text}")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        keys: SigningKeySet = {}
        for position, jwk in enumerate(entries):
            # Signature keys only
            if not isinstance(jwk, dict) or jwk.get("use", "") != "sig":
                continue
            kid = jwk.get("kid")
            keys[kid if isinstance(kid, str) else position] = jwk

        logger.debug(f"Loaded {len(keys)} signature keys from {jwks_uri}")
        return keys
