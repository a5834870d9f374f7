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
OpenID Connect single sign-on for the discovery portal: Authorization Code flow,
identity token verification and local identity provisioning.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import OIDCClientConfig, load_config
from .exceptions import AdminConfigurationError, AuthenticationError, TechnicalAuthError
from .models import LocalIdentity, LoginPhase, OIDCSession, ProviderMetadata, TokenSet, UserInfo
from .oidc_provider import KeySetCache, ProviderMetadataResolver
from .orchestrator import AuthenticationOrchestrator
from .provisioner import IdentityProvisioner, InMemoryCatalogCredentialStore, InMemoryUserRepository
from .state import StateNonceManager
from .token_exchange import TokenExchanger
from .userinfo import UserInfoClient
from .validator import ClaimsValidator, IdentityTokenVerifier

__all__ = [
    "AdminConfigurationError",
    "AuthenticationError",
    "AuthenticationOrchestrator",
    "ClaimsValidator",
    "IdentityProvisioner",
    "IdentityTokenVerifier",
    "InMemoryCatalogCredentialStore",
    "InMemoryUserRepository",
    "KeySetCache",
    "LocalIdentity",
    "LoginPhase",
    "OIDCClientConfig",
    "OIDCSession",
    "ProviderMetadata",
    "ProviderMetadataResolver",
    "StateNonceManager",
    "TechnicalAuthError",
    "TokenExchanger",
    "TokenSet",
    "UserInfo",
    "UserInfoClient",
    "load_config",
]
