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
AuthenticationOrchestrator component: the authentication module's public surface.

One orchestrator serves one request. A login spans two of them: the request that
builds the authorization URL, and the provider's callback. Everything carried
between the two lives in the `OIDCSession`.
"""

from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

import httpx
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.trace import Status, StatusCode

from coreason_sso.config import OIDCClientConfig, is_absolute_url
from coreason_sso.exceptions import AdminConfigurationError, AuthenticationError, InvalidTokenError, TechnicalAuthError
from coreason_sso.models import LoginPhase, OIDCSession
from coreason_sso.oidc_provider import KeySetCache, ProviderMetadataResolver
from coreason_sso.provisioner import CatalogCredentialStoreProtocol, IdentityProvisioner, UserRepositoryProtocol
from coreason_sso.state import StateNonceManager
from coreason_sso.token_exchange import TokenExchanger
from coreason_sso.transport import SafeHTTPTransport
from coreason_sso.userinfo import UserInfoClient
from coreason_sso.utils.logger import logger
from coreason_sso.validator import ClaimsValidator, IdentityTokenVerifier

tracer = trace.get_tracer(__name__)


def append_query(url: str, params: Mapping[str, str]) -> str:
    """Appends url-encoded `params` to `url`, which may already carry a query string."""
    return url + ("&" if "?" in url else "?") + urlencode(params)


class AuthenticationOrchestrator:
    """
    Runs the Authorization Code flow with identity token verification.

    Attributes:
        phase (LoginPhase): Progress of the login attempt handled by this instance.
    """

    def __init__(
        self,
        config: OIDCClientConfig,
        session: OIDCSession,
        users: UserRepositoryProtocol,
        credentials: CatalogCredentialStoreProtocol,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the AuthenticationOrchestrator.

        Args:
            config: The relying party configuration.
            session: The browser session's login values; mutated in place.
            users: Storage for local user records.
            credentials: Library system credential store.
            client: External HTTP client (optional). If not provided, a `SafeHTTPTransport` client is created.
        """
        self.config = config
        self.session = session
        self._internal_client = client is None

        if client is not None:
            self._client = client
        else:
            # Use SafeHTTPTransport to prevent SSRF and DNS Rebinding
            self._client = httpx.Client(transport=SafeHTTPTransport(), timeout=self.config.http_timeout)

        HTTPXClientInstrumentor().instrument_client(self._client)

        self.resolver = ProviderMetadataResolver(config, self._client)
        self.key_cache = KeySetCache(
            self.resolver,
            self._client,
            cache_ttl=config.jwks_cache_ttl,
            refresh_cooldown=config.jwks_refresh_cooldown,
            require_kid=config.require_kid,
        )
        self.verifier = IdentityTokenVerifier(
            self.key_cache,
            allowed_algorithms=config.allowed_algorithms,
            pii_salt=config.pii_salt,
            leeway=config.clock_skew_leeway,
        )
        self.state = StateNonceManager(session)
        self.token_exchanger = TokenExchanger(config, self.resolver, self._client)
        self.userinfo_client = UserInfoClient(self.resolver, self._client)
        self.provisioner = IdentityProvisioner(
            users,
            credentials,
            attributes=config.attributes,
            username_prefix=config.username_prefix,
            pii_salt=config.pii_salt,
        )
        self.phase = LoginPhase.IDLE

    def __enter__(self) -> "AuthenticationOrchestrator":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Closes the HTTP client if this orchestrator created it."""
        if self._internal_client:
            self._client.close()

    def get_session_initiator(self, target: str) -> str:
        """
        Builds the provider authorization URL that starts a login.

        Args:
            target: Absolute URL of the callback handler in this application.

        Returns:
            str: The authorization endpoint with response_type, redirect_uri,
                client_id, nonce, state and scope parameters.

        Raises:
            AdminConfigurationError: If provider metadata cannot be resolved.
        """
        try:
            self.state.ensure_state()
            target_uri = self._callback_uri(target)
            if not self.session.oidc_last_uri and target_uri:
                self.session.oidc_last_uri = target_uri

            params = {
                "response_type": "code",
                "redirect_uri": self.session.oidc_last_uri or target_uri,
                "client_id": self.config.client_id,
                "nonce": self.state.current_nonce() or "",
                "state": self.state.current_state() or "",
                "scope": self.config.scope,
            }
            url = append_query(self.resolver.get_metadata().authorization_endpoint, params)
        except AuthenticationError:
            self.phase = LoginPhase.FAILED
            raise
        self.phase = LoginPhase.AWAITING_CALLBACK
        return url

    def _callback_uri(self, target: str) -> str:
        """Tags `target` with `auth_method` so a dispatching login handler can route the callback."""
        if not target or not self.config.callback_auth_method:
            return target
        return append_query(target, {"auth_method": self.config.callback_auth_method})

    def authenticate(self, query: Mapping[str, Any]) -> Any:
        """
        Handles the provider's callback and returns the provisioned local user.

        Emits an OpenTelemetry span `authenticate`.

        Args:
            query: The callback's query parameters (`code` and `state`).

        Raises:
            AdminConfigurationError: If `code` is missing or the provider is misconfigured.
            TechnicalAuthError: For a state mismatch or any exchange, verification or userinfo failure.
        """
        with tracer.start_as_current_span("authenticate") as span:
            try:
                user = self._handle_callback(query)
            except AuthenticationError as e:
                self.phase = LoginPhase.FAILED
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, e.message_key))
                raise
            self.phase = LoginPhase.PROVISIONED
            span.set_status(Status(StatusCode.OK))
            return user

    def _handle_callback(self, query: Mapping[str, Any]) -> Any:
        code = query.get("code")
        if not code or not isinstance(code, str):
            logger.error("Callback is missing the 'code' parameter")
            raise AdminConfigurationError(AdminConfigurationError.message_key)

        self.phase = LoginPhase.VALIDATING
        received_state = query.get("state")
        state_valid = self.state.state_matches(received_state if isinstance(received_state, str) else None)
        # A state is good for one callback only, whatever the outcome
        self.state.ensure_state(reset_state=True)
        redirect_uri = self.session.oidc_last_uri
        self.session.oidc_last_uri = None
        if not state_valid:
            logger.error("Bad state in callback")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        token_set = self.token_exchanger.exchange(code, redirect_uri)
        if not token_set.id_token or not token_set.access_token:
            logger.error("Token response lacks an id_token or access_token")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

        try:
            self._verify_identity_token(token_set.id_token)
        finally:
            self.state.clear_nonce()

        user_info = self.userinfo_client.fetch(token_set.access_token)

        # Kept for id_token_hint at logout
        self.session.oidc_id_token = token_set.id_token

        return self.provisioner.provision(user_info)

    def _verify_identity_token(self, id_token: str) -> None:
        try:
            claims = self.verifier.decode_and_verify(id_token)
        except InvalidTokenError as e:
            logger.error(f"Identity token rejected: {e.__class__.__name__}: {e}")
            raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        validator = ClaimsValidator(self.resolver.get_metadata().issuer, self.config.client_id)
        if not validator.issuer_matches(claims):
            logger.error(f"Wrong issuer: {claims.get('iss')!r}")
            raise TechnicalAuthError(TechnicalAuthError.message_key)
        if not validator.claims_valid(claims, self.state.current_nonce()):
            logger.error("Claims not valid")
            raise TechnicalAuthError(TechnicalAuthError.message_key)

    def build_logout_url(self, return_url: str) -> str:
        """
        Returns where to send the browser at logout.

        With an end-session endpoint (configured URL, or the provider's when `logout`
        is any other truthy value) the result carries `id_token_hint` (when the session
        holds an identity token) and `post_logout_redirect_uri`. Otherwise `return_url`
        is returned unchanged.
        """
        logout = self.config.logout
        end_session_endpoint: str | None = None

        if not logout:
            logger.debug("no logout URL given")
        elif isinstance(logout, str) and is_absolute_url(logout):
            end_session_endpoint = logout
        else:
            end_session_endpoint = self.resolver.get_metadata().end_session_endpoint

        if not end_session_endpoint:
            return return_url

        params: dict[str, str] = {}
        if self.session.oidc_id_token:
            params["id_token_hint"] = self.session.oidc_id_token
        else:
            logger.warning("No id_token found in session data")
        params["post_logout_redirect_uri"] = return_url
        return append_query(end_session_endpoint, params)
