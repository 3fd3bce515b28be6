"""Secrets handling for the audit decrypt job.

Secrets (database password, patient hash salt) come from the environment,
never from config files or connection URLs, and are masked whenever they
might reach a log line.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

ENV_DB_PASSWORD = "DKA_AUDIT_DB_PASSWORD"
ENV_PATIENT_HASH_SALT = "DKA_AUDIT_PATIENT_HASH_SALT"


class MaskedSecret:
    """Wrapper that prevents accidental exposure of secret values."""

    def __init__(self, value: str):
        self._value = value

    def get_value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "***MASKED***"

    def __repr__(self) -> str:
        return "MaskedSecret(***)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MaskedSecret):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


class SecretProvider(ABC):
    """Abstract base class for secrets backends."""

    @abstractmethod
    def get_secret(self, key: str) -> str | None:
        """Retrieve a secret value by key, or None if not found."""

    def get_secret_masked(self, key: str) -> MaskedSecret | None:
        value = self.get_secret(key)
        if value is not None:
            return MaskedSecret(value)
        return None


class EnvSecretProvider(SecretProvider):
    """Retrieve secrets from environment variables."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def get_secret(self, key: str) -> str | None:
        full_key = f"{self.prefix}{key}" if self.prefix else key
        value = os.environ.get(full_key)
        if value is not None:
            logger.debug("Secret loaded from environment variable: %s", full_key)
        return value


class SecretProviderError(Exception):
    """Raised when a required secret is unavailable."""

    pass


class CredentialValidationError(Exception):
    """Raised when credentials are found in insecure locations."""

    pass


def validate_no_password_in_url(url: str) -> None:
    """Reject database URLs that embed a password.

    Raises:
        CredentialValidationError: If a password is present in the URL.
    """
    parsed = urlparse(url)

    user_info = parsed.netloc.split("@")[0] if "@" in parsed.netloc else ""
    if parsed.password or ":" in user_info:
        raise CredentialValidationError(
            "Database password detected in connection URL. "
            f"Provide it via {ENV_DB_PASSWORD} or PGPASSWORD instead."
        )


def mask_password_in_url(url: str) -> str:
    """Replace any password in a database URL with ***MASKED*** for logging."""
    pattern = r"(://[^:/@]+:)([^@]+)(@)"
    return re.sub(pattern, r"\1***MASKED***\3", url)


def get_default_provider() -> SecretProvider:
    return EnvSecretProvider()


def get_database_password(
    provider: SecretProvider | None = None,
    password_env_var: str = ENV_DB_PASSWORD,
) -> str | None:
    """Get the database password, falling back to PGPASSWORD.

    Returns:
        The password if found, None otherwise.
    """
    if provider is None:
        provider = get_default_provider()

    password = provider.get_secret(password_env_var)
    if password:
        logger.info("Database password loaded from %s", password_env_var)
        return password

    password = provider.get_secret("PGPASSWORD")
    if password:
        logger.info("Database password loaded from PGPASSWORD")
        return password

    return None


def get_patient_hash_salt(provider: SecretProvider | None = None) -> MaskedSecret:
    """Get the server-side salt used to re-hash submitted patient hashes.

    Raises:
        SecretProviderError: If the salt is not configured.
    """
    if provider is None:
        provider = get_default_provider()

    salt = provider.get_secret_masked(ENV_PATIENT_HASH_SALT)
    if salt is None or not salt.get_value():
        raise SecretProviderError(
            f"Patient hash salt not configured. Set {ENV_PATIENT_HASH_SALT}."
        )
    return salt
