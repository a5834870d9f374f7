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
Anti-forgery state and replay-protection nonce for a login attempt.
"""

import hashlib
import hmac
import secrets

from coreason_sso.models import OIDCSession


def generate_token() -> str:
    """Returns a 256-bit opaque value: the SHA-256 hex digest of 32 random bytes."""
    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


class StateNonceManager:
    """
    Keeps the login state and nonce in the user's session.

    Neither value is ever logged; they only leave the session inside the
    authorization URL.
    """

    def __init__(self, session: OIDCSession) -> None:
        self.session = session

    def ensure_state(self, reset_state: bool = False) -> None:
        """
        Creates missing values.

        Args:
            reset_state: Regenerate the state even when one exists, so a consumed
                state can never be accepted again. The nonce is left alone.
        """
        if reset_state or not self.session.oidc_state:
            self.session.oidc_state = generate_token()
        if not self.session.oidc_nonce:
            self.session.oidc_nonce = generate_token()

    def current_state(self) -> str | None:
        return self.session.oidc_state

    def current_nonce(self) -> str | None:
        return self.session.oidc_nonce

    def clear_nonce(self) -> None:
        self.session.oidc_nonce = None

    def state_matches(self, received: str | None) -> bool:
        """Constant-time comparison of a callback's state with the session state."""
        expected = self.session.oidc_state
        if not received or not expected:
            return False
        return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
