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
Custom exceptions for the coreason-sso package.

Everything surfaced to the hosting application is one of two kinds:
`AdminConfigurationError` (a deployment mistake) or `TechnicalAuthError`
(transport, protocol or token failure). Both carry a generic `message_key`
that is safe to show to the user.
"""


class CoreasonSSOError(Exception):
    """Base exception for all coreason-sso errors."""


class AuthenticationError(CoreasonSSOError):
    """Base class for failures surfaced to the login flow."""

    message_key = "authentication_error_technical"


class AdminConfigurationError(AuthenticationError):
    """
    Raised when required configuration or provider metadata is missing,
    or the callback arrives without a `code` parameter.
    """

    message_key = "authentication_error_admin"


class TechnicalAuthError(AuthenticationError):
    """
    Raised for transport failures, unexpected responses, state mismatches
    and identity token failures. The user is asked to try again.
    """

    message_key = "authentication_error_technical"


class OversizedResponseError(TechnicalAuthError):
    """Raised when an HTTP response is too large."""


class InvalidTokenError(TechnicalAuthError):
    """Raised when the identity token is malformed or fails verification."""


class TokenExpiredError(InvalidTokenError):
    """Raised when the identity token has expired."""


class SignatureVerificationError(InvalidTokenError):
    """Raised when the identity token's signature cannot be verified."""


class KeyNotFoundError(InvalidTokenError):
    """Raised when no signing key matches the token header."""
