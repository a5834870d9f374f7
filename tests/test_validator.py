# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import base64
import json
import time
from typing import Any, Callable

import pytest
from authlib.jose import JsonWebKey, jwt
from conftest import CLIENT_ID, ISSUER, FakeProvider, public_jwk, with_kid
from pydantic import SecretStr

from coreason_sso.config import OIDCClientConfig
from coreason_sso.exceptions import (
    InvalidTokenError,
    KeyNotFoundError,
    SignatureVerificationError,
    TechnicalAuthError,
    TokenExpiredError,
)
from coreason_sso.oidc_provider import KeySetCache, ProviderMetadataResolver
from coreason_sso.validator import ClaimsValidator, IdentityTokenVerifier, unverified_header


def b64(data: dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


@pytest.fixture
def verifier(config: OIDCClientConfig, provider: FakeProvider) -> IdentityTokenVerifier:
    client = provider.client()
    cache = KeySetCache(ProviderMetadataResolver(config, client), client)
    return IdentityTokenVerifier(cache, allowed_algorithms=["RS256", "ES256"], pii_salt=SecretStr("salt"))


class TestIdentityTokenVerifier:
    def test_valid_token(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        claims = verifier.decode_and_verify(make_id_token(nonce="n-1"))
        assert claims["sub"] == "user-1"
        assert claims["nonce"] == "n-1"
        assert claims["aud"] == CLIENT_ID

    def test_surrounding_whitespace(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        assert verifier.decode_and_verify(f"  {make_id_token()}\n")["sub"] == "user-1"

    def test_expired(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        token = make_id_token(exp=int(time.time()) - 10, iat=int(time.time()) - 100)
        with pytest.raises(TokenExpiredError):
            verifier.decode_and_verify(token)

    def test_expired_within_leeway(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        verifier.leeway = 120
        token = make_id_token(exp=int(time.time()) - 10, iat=int(time.time()) - 100)
        assert verifier.decode_and_verify(token)["sub"] == "user-1"

    def test_not_yet_valid(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        token = make_id_token(nbf=int(time.time()) + 600)
        with pytest.raises(InvalidTokenError):
            verifier.decode_and_verify(token)

    def test_foreign_key_same_kid(
        self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str], other_key: Any
    ) -> None:
        with pytest.raises(SignatureVerificationError):
            verifier.decode_and_verify(make_id_token(key=other_key))

    def test_unknown_kid(
        self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str], other_key: Any
    ) -> None:
        token = make_id_token(key=with_kid(other_key, "unknown"), headers={"alg": "RS256", "kid": "unknown"})
        assert unverified_header(token)["kid"] == "unknown"
        with pytest.raises(KeyNotFoundError):
            verifier.decode_and_verify(token)

    def test_unknown_kid_is_technical_failure(
        self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str], signing_key: Any
    ) -> None:
        """Test that a known key under an unpublished kid is still refused."""
        token = make_id_token(key=with_kid(signing_key, "key-2"), headers={"alg": "RS256", "kid": "key-2"})
        with pytest.raises(TechnicalAuthError):
            verifier.decode_and_verify(token)

    def test_kidless_token_uses_single_key(
        self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str], signing_key: Any
    ) -> None:
        token = make_id_token(key=with_kid(signing_key, None), headers={"alg": "RS256"})
        assert "kid" not in unverified_header(token)
        assert verifier.decode_and_verify(token)["sub"] == "user-1"

    def test_disallowed_algorithm(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        verifier.allowed_algorithms = ["ES256"]
        with pytest.raises(InvalidTokenError, match="not allowed"):
            verifier.decode_and_verify(make_id_token())

    def test_alg_none_rejected(self, verifier: IdentityTokenVerifier) -> None:
        token = f"{b64({'alg': 'none', 'kid': 'key-1'})}.{b64({'sub': 'x', 'iss': ISSUER})}."
        with pytest.raises(InvalidTokenError):
            verifier.decode_and_verify(token)

    def test_hmac_with_public_key_rejected(self, verifier: IdentityTokenVerifier, jwks: dict[str, Any]) -> None:
        # Classic algorithm confusion: HS256 keyed with the published RSA modulus
        secret = JsonWebKey.import_key({"kty": "oct", "k": jwks["keys"][0]["n"]})
        token = jwt.encode({"alg": "HS256", "kid": "key-1"}, {"sub": "x"}, secret).decode()
        header = unverified_header(token)
        assert (header["alg"], header["kid"]) == ("HS256", "key-1")
        with pytest.raises(InvalidTokenError, match="not allowed"):
            verifier.decode_and_verify(token)

    def test_key_algorithm_mismatch(
        self,
        verifier: IdentityTokenVerifier,
        provider: FakeProvider,
        signing_key: Any,
        make_id_token: Callable[..., str],
    ) -> None:
        provider.jwks = {"keys": [public_jwk(signing_key, alg="ES256")]}
        with pytest.raises(SignatureVerificationError):
            verifier.decode_and_verify(make_id_token())

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "!!!.e30.sig", f"{b64({'alg': 'RS256'})[:-2]}x.e30.sig"])
    def test_malformed(self, verifier: IdentityTokenVerifier, token: str) -> None:
        with pytest.raises(InvalidTokenError):
            verifier.decode_and_verify(token)

    def test_tampered_payload(self, verifier: IdentityTokenVerifier, make_id_token: Callable[..., str]) -> None:
        header, _, signature = make_id_token().split(".")
        forged = b64({"iss": ISSUER, "aud": CLIENT_ID, "sub": "admin", "exp": int(time.time()) + 60})
        with pytest.raises(SignatureVerificationError):
            verifier.decode_and_verify(f"{header}.{forged}.{signature}")

    def test_errors_are_technical(self) -> None:
        for error in (InvalidTokenError, TokenExpiredError, SignatureVerificationError, KeyNotFoundError):
            assert issubclass(error, TechnicalAuthError)


def test_unverified_header() -> None:
    assert unverified_header(f"{b64({'alg': 'RS256', 'kid': 'k'})}.e30.sig") == {"alg": "RS256", "kid": "k"}
    with pytest.raises(InvalidTokenError):
        unverified_header(f"{base64.urlsafe_b64encode(b'[1]').decode()}.e30.sig")


class TestClaimsValidator:
    @pytest.fixture
    def validator(self) -> ClaimsValidator:
        return ClaimsValidator(ISSUER, CLIENT_ID)

    @pytest.fixture
    def claims(self) -> dict[str, Any]:
        return {"iss": ISSUER, "aud": CLIENT_ID, "sub": "u", "exp": int(time.time()) + 60, "nonce": "n-1"}

    def test_valid(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        assert validator.issuer_matches(claims)
        assert validator.claims_valid(claims, "n-1")

    def test_issuer(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        assert not validator.issuer_matches({**claims, "iss": f"{ISSUER}/"})
        assert not validator.issuer_matches({k: v for k, v in claims.items() if k != "iss"})

    def test_nonce_mismatch(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        assert not validator.claims_valid(claims, "n-2")
        assert not validator.claims_valid(claims, None)

    def test_nonce_absent_from_token(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        del claims["nonce"]
        assert validator.claims_valid(claims, "n-1")

    def test_audience(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        assert not validator.claims_valid({**claims, "aud": "other"}, "n-1")
        assert validator.claims_valid({**claims, "aud": [CLIENT_ID]}, "n-1")
        assert not validator.claims_valid({**claims, "aud": [CLIENT_ID, "other"]}, "n-1")
        assert validator.claims_valid({**claims, "aud": [CLIENT_ID, "other"], "azp": CLIENT_ID}, "n-1")
        assert not validator.claims_valid({k: v for k, v in claims.items() if k != "aud"}, "n-1")

    def test_expiry(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        assert not validator.claims_valid({**claims, "exp": int(time.time()) - 1}, "n-1")
        assert not validator.claims_valid(claims, "n-1", now=claims["exp"])
        assert validator.claims_valid(claims, "n-1", now=claims["exp"] - 1)

    def test_expiry_must_be_integer(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        assert not validator.claims_valid({**claims, "exp": str(claims["exp"])}, "n-1")
        assert not validator.claims_valid({**claims, "exp": float(claims["exp"])}, "n-1")
        assert not validator.claims_valid({**claims, "exp": True}, "n-1")

    def test_expiry_optional(self, validator: ClaimsValidator, claims: dict[str, Any]) -> None:
        del claims["exp"]
        assert validator.claims_valid(claims, "n-1")
