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
IdentityProvisioner component for mapping provider claims onto the local user record.
"""

from typing import Any, Protocol

from pydantic import SecretStr, ValidationError

from coreason_sso.exceptions import TechnicalAuthError
from coreason_sso.models import LocalIdentity, UserInfo
from coreason_sso.utils.logger import anonymize, logger

DEFAULT_ATTRIBUTE_MAPPINGS: dict[str, str] = {
    "firstname": "given_name",
    "lastname": "family_name",
    "email": "email",
}

# Local fields that claims are allowed to populate
AVAILABLE_ATTRIBUTES = frozenset(
    {
        "firstname",
        "lastname",
        "email",
        "cat_id",
        "cat_username",
        "cat_password",
        "college",
        "major",
        "home_library",
    }
)


class UserRepositoryProtocol(Protocol):
    """Storage for local user records."""

    def get_or_create_by_username(self, username: str) -> Any:
        """Returns the user with `username`, creating an unsaved one if needed."""
        ...

    def update_email(self, user: Any, email: str) -> None:
        """Changes the user's email address through the store's own update path."""
        ...

    def persist(self, user: Any) -> None:
        """Saves the user."""
        ...


class CatalogCredentialStoreProtocol(Protocol):
    """Library system credentials attached to a local user."""

    def get_catalog_password(self, user: Any) -> str | None:
        ...

    def set_catalog_credentials(self, user: Any, username: str, password: str | None) -> None:
        ...


class InMemoryUserRepository:
    """
    In-memory implementation of UserRepositoryProtocol.
    Holds LocalIdentity records in a dictionary. Not suitable for multi-process deployments.
    """

    def __init__(self) -> None:
        self.users: dict[str, LocalIdentity] = {}
        self.persist_count = 0

    def get_or_create_by_username(self, username: str) -> LocalIdentity:
        user = self.users.get(username)
        if user is None:
            user = LocalIdentity(username=username)
        return user

    def update_email(self, user: LocalIdentity, email: str) -> None:
        user.email = email

    def persist(self, user: LocalIdentity) -> None:
        self.users[user.username] = user
        self.persist_count += 1


class InMemoryCatalogCredentialStore:
    """In-memory implementation of CatalogCredentialStoreProtocol keyed by username."""

    def __init__(self) -> None:
        self.credentials: dict[str, tuple[str, SecretStr | None]] = {}

    def get_catalog_password(self, user: LocalIdentity) -> str | None:
        stored = self.credentials.get(user.username)
        if stored is None or stored[1] is None:
            return None
        return stored[1].get_secret_value()

    def set_catalog_credentials(self, user: LocalIdentity, username: str, password: str | None) -> None:
        self.credentials[user.username] = (username, SecretStr(password) if password is not None else None)
        user.cat_username = username
        user.cat_password = SecretStr(password) if password is not None else None


class IdentityProvisioner:
    """
    Creates or updates the local user for a set of provider claims.

    Attributes:
        attribute_mappings (dict[str, str]): Local attribute to claim name, defaults
            merged with configured overrides and restricted to AVAILABLE_ATTRIBUTES.
        username_prefix (str): Prefix for the local username.
    """

    def __init__(
        self,
        users: UserRepositoryProtocol,
        credentials: CatalogCredentialStoreProtocol,
        attributes: dict[str, str] | None = None,
        username_prefix: str = "",
        pii_salt: SecretStr | None = None,
    ) -> None:
        self.users = users
        self.credentials = credentials
        self.username_prefix = username_prefix
        self.pii_salt = pii_salt or SecretStr("")
        mappings = {**DEFAULT_ATTRIBUTE_MAPPINGS, **(attributes or {})}
        ignored = sorted(set(mappings) - AVAILABLE_ATTRIBUTES)
        if ignored:
            logger.warning(f"Ignoring attribute mappings for unsupported fields: {', '.join(ignored)}")
        self.attribute_mappings = {k: v for k, v in mappings.items() if k in AVAILABLE_ATTRIBUTES}

    def provision(self, user_info: UserInfo) -> Any:
        """
        Maps `user_info` onto the local user, propagates catalog credentials and persists.

        Returns:
            The persisted user record.

        Raises:
            TechnicalAuthError: If a claim value cannot be stored on the user record.
        """
        username = f"{self.username_prefix}{user_info.sub}"
        user = self.users.get_or_create_by_username(username)

        cat_password: str | None = None
        for user_attr, claim_name in self.attribute_mappings.items():
            value = user_info.get_claim(claim_name)
            if value is None or value == "":
                continue
            if isinstance(value, (dict, list)):
                logger.warning(f"Skipping non-scalar claim '{claim_name}' for '{user_attr}'")
                continue
            value = str(value)
            if user_attr == "email":
                self.users.update_email(user, value)
                continue
            if user_attr == "cat_password":
                cat_password = value
                continue
            try:
                setattr(user, user_attr, value)
            except (ValidationError, ValueError, TypeError) as e:
                logger.error(f"Cannot store claim '{claim_name}' as '{user_attr}': {e.__class__.__name__}")
                raise TechnicalAuthError(TechnicalAuthError.message_key) from e

        cat_username = getattr(user, "cat_username", None)
        if cat_username:
            password = cat_password if cat_password is not None else self.credentials.get_catalog_password(user)
            self.credentials.set_catalog_credentials(user, cat_username, password)

        self.users.persist(user)
        logger.info(f"Provisioned local user {anonymize(username, self.pii_salt.get_secret_value())}")
        return user
