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
Identity token verification: signature and temporal claims, then the
issuer, audience and nonce checks that bind the token to this login.
"""

import hmac
import time
from typing import Any

from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import BadSignatureError, ExpiredTokenError, JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr, ValidationError

from coreason_sso.exceptions import (
    CoreasonSSOError,
    InvalidTokenError,
    SignatureVerificationError,
    TokenExpiredError,
)
from coreason_sso.models import IdentityClaims
from coreason_sso.oidc_provider import KeySetCache
from coreason_sso.utils.logger import anonymize, logger

tracer = trace.get_tracer(__name__)


def unverified_header(token: str) -> dict[str, Any]:
    """
    Decodes the JOSE header of a compact JWT without verifying anything.

    Raises:
        InvalidTokenError: If the token is not a three-part JWT with a JSON object header.
    """
    segments = token.split(".")
    if len(segments) != 3:
        raise InvalidTokenError("Token is not a compact JWT")
    try:
        header = json_loads(urlsafe_b64decode(to_bytes(segments[0])))
    except ValueError as e:
        raise InvalidTokenError(f"Token header is not decodable: {e}") from e
    if not isinstance(header, dict):
        raise InvalidTokenError("Token header is not a JSON object")
    return header


class IdentityTokenVerifier:
    """
    Verifies identity token signatures against the provider's signing keys.

    Attributes:
        key_cache (KeySetCache): Source of the provider's JWKs.
        allowed_algorithms (list[str]): Accepted `alg` header values.
        leeway (int): Acceptable clock skew in seconds for `exp` and `nbf`.
    """

    def __init__(
        self,
        key_cache: KeySetCache,
        allowed_algorithms: list[str],
        pii_salt: SecretStr,
        leeway: int = 0,
    ) -> None:
        self.key_cache = key_cache
        self.allowed_algorithms = allowed_algorithms
        self.pii_salt = pii_salt
        self.leeway = leeway

    def decode_and_verify(self, token: str) -> dict[str, Any]:
        """
        Verifies the token's signature and temporal claims and returns its payload.

        Emits an OpenTelemetry span `decode_and_verify`.

        Args:
            token: The compact identity token.

        Returns:
            dict[str, Any]: The verified claims.

        Raises:
            TokenExpiredError: If the token has expired.
            SignatureVerificationError: If the signature does not verify against the selected key.
            KeyNotFoundError: If the header names a key the provider does not publish.
            InvalidTokenError: For malformed tokens, disallowed algorithms and other JOSE errors.
            TechnicalAuthError: If the signing keys cannot be fetched.
        """
        with tracer.start_as_current_span("decode_and_verify") as span:
            token = token.strip()
            try:
                header = unverified_header(token)
                alg = header.get("alg")
                kid = header.get("kid")
                if not isinstance(alg, str) or alg not in self.allowed_algorithms:
                    raise InvalidTokenError(f"Token algorithm {alg!r} is not allowed")
                if kid is not None and not isinstance(kid, str):
                    raise InvalidTokenError("Token 'kid' header is not a string")

                jwk = self.key_cache.get_key(kid)
                key_alg = jwk.get("alg")
                if key_alg and key_alg != alg:
                    raise SignatureVerificationError(f"Token algorithm {alg} does not match key algorithm {key_alg}")

                key = JsonWebKey.import_key(jwk)
                claims = JsonWebToken([alg]).decode(token, key)
                claims.validate(leeway=self.leeway)
                payload = dict(claims)

                user_hash = anonymize(str(payload.get("sub", "unknown")), self.pii_salt.get_secret_value())
                logger.info(f"Identity token verified for user {user_hash}")
                span.set_attribute("enduser.id", user_hash)
                span.set_status(Status(StatusCode.OK))
                return payload

            except ExpiredTokenError as e:
                logger.warning("Verification failed: Token expired")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise TokenExpiredError(f"Token has expired: {e}") from e
            except BadSignatureError as e:
                logger.error("Verification failed: Bad signature")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise SignatureVerificationError(f"Invalid signature: {e}") from e
            except JoseError as e:
                logger.error(f"Verification failed: JOSE error {e.error}: {e.description}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise InvalidTokenError(f"Token verification failed: {e}") from e
            except CoreasonSSOError as e:
                logger.error(f"Verification failed: {e.__class__.__name__}: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            except (ValueError, TypeError, KeyError) as e:
                # Authlib raises these for unusable keys or payloads
                logger.error(f"Verification failed: {e.__class__.__name__}: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise InvalidTokenError(f"Token verification failed: {e}") from e


class ClaimsValidator:
    """
    Binds a verified identity token to this client and this login attempt.

    Each check answers only True or False; callers report a single generic failure.
    """

    def __init__(self, issuer: str, client_id: str) -> None:
        self.issuer = issuer
        self.client_id = client_id

    def issuer_matches(self, claims: dict[str, Any]) -> bool:
        return claims.get("iss") == self.issuer

    def audience_matches(self, aud: str | list[str], azp: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.client_id
        if self.client_id not in aud:
            return False
        # Several audiences: the token must have been issued to us
        return len(aud) == 1 or azp == self.client_id

    def claims_valid(self, claims: dict[str, Any], nonce: str | None, now: float | None = None) -> bool:
        """
        Checks the nonce (when the token carries one), the audience and the expiry.

        Args:
            claims: Verified identity token claims.
            nonce: The nonce stored in the session.
            now: Current UNIX time; defaults to `time.time()`.
        """
        try:
            parsed = IdentityClaims.model_validate(claims)
        except ValidationError:
            return False

        if now is None:
            now = time.time()

        nonce_valid = parsed.nonce is None or (
            nonce is not None and hmac.compare_digest(parsed.nonce.encode("utf-8"), nonce.encode("utf-8"))
        )
        audience_valid = self.audience_matches(parsed.aud, claims.get("azp"))
        expiry_valid = parsed.exp is None or parsed.exp > now
        return nonce_valid and audience_valid and expiry_valid
