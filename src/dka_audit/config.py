"""Configuration file support for dka-audit."""

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ENV_ENVIRONMENT = "DKA_AUDIT_ENV"

DEFAULT_ENVIRONMENT = "production"

VALID_ENVIRONMENTS = {"production", "development"}

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

CREDENTIAL_KEYS = {
    "password",
    "db_password",
    "database_password",
    "secret",
    "salt",
    "private_key",
    "api_key",
    "token",
    "credentials",
    "auth",
}


@dataclass
class JobConfig:
    """Settings for one decrypt job run."""

    workers: int = 8
    log_level: str = "INFO"
    environment: str = DEFAULT_ENVIRONMENT
    include_tests: bool = False


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class CredentialInConfigError(Exception):
    """Raised when credentials are detected in configuration files."""

    pass


def resolve_environment() -> str:
    """Deployment environment from DKA_AUDIT_ENV.

    Only ``development`` is significant; anything else runs as production.
    """
    value = os.environ.get(ENV_ENVIRONMENT, "").strip().lower()
    return "development" if value == "development" else DEFAULT_ENVIRONMENT


def detect_credentials_in_config(
    config_dict: dict[str, Any],
    path: str = "",
    warn_only: bool = True,
) -> list[str]:
    """Detect potential credentials in a configuration dictionary.

    Args:
        config_dict: Configuration dictionary to check.
        path: Current path in nested config (for error messages).
        warn_only: If True, emit warning. If False, raise error.

    Returns:
        List of detected credential key paths.

    Raises:
        CredentialInConfigError: If credentials found and warn_only=False.
    """
    detected = []

    for key, value in config_dict.items():
        current_path = f"{path}.{key}" if path else key
        key_lower = key.lower()

        if any(cred_key in key_lower for cred_key in CREDENTIAL_KEYS) and value:
            detected.append(current_path)

        if isinstance(value, dict):
            detected.extend(detect_credentials_in_config(value, current_path, warn_only=True))

    if detected and not path:
        msg = (
            f"Potential credentials detected in config file: {', '.join(detected)}. "
            "Keys, salts and passwords must be provided via environment variables, "
            "not configuration files."
        )
        if warn_only:
            logger.warning(msg)
        else:
            raise CredentialInConfigError(msg)

    return detected


def validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values.

    Raises:
        ConfigValidationError: If any configuration value is invalid.
    """
    if "workers" in config_dict:
        workers = config_dict["workers"]
        if not isinstance(workers, int) or isinstance(workers, bool):
            raise ConfigValidationError(f"workers must be an integer, got {type(workers).__name__}")
        if workers <= 0:
            raise ConfigValidationError(f"workers must be positive, got {workers}")

    if "log_level" in config_dict:
        log_level = config_dict["log_level"]
        if not isinstance(log_level, str):
            raise ConfigValidationError(
                f"log_level must be a string, got {type(log_level).__name__}"
            )
        if log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(
                f"log_level must be one of {sorted(VALID_LOG_LEVELS)}, got '{log_level}'"
            )

    if "environment" in config_dict:
        environment = config_dict["environment"]
        if not isinstance(environment, str) or environment.lower() not in VALID_ENVIRONMENTS:
            raise ConfigValidationError(
                f"environment must be one of {sorted(VALID_ENVIRONMENTS)}, got '{environment}'"
            )

    if "include_tests" in config_dict and not isinstance(config_dict["include_tests"], bool):
        raise ConfigValidationError(
            f"include_tests must be a boolean, got {type(config_dict['include_tests']).__name__}"
        )


def load_config(config_path: Path | None = None, overrides: dict[str, Any] | None = None) -> JobConfig:
    """Load job configuration from a TOML file.

    Values come from the ``[dka_audit]`` table. Without a file, the
    environment comes from DKA_AUDIT_ENV.

    Args:
        config_path: Path to the TOML configuration file, or None.
        overrides: Optional dict of values to override loaded config.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigValidationError: If any configuration value is invalid.
    """
    config_dict: dict[str, Any] = {"environment": resolve_environment()}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "rb") as f:
            toml_data = tomllib.load(f)

        detect_credentials_in_config(toml_data, warn_only=True)
        config_dict.update(toml_data.get("dka_audit", {}))

    if overrides:
        config_dict.update({k: v for k, v in overrides.items() if v is not None})

    validate_config(config_dict)

    valid_fields = {"workers", "log_level", "environment", "include_tests"}
    filtered_config = {k: v for k, v in config_dict.items() if k in valid_fields}
    filtered_config["environment"] = filtered_config["environment"].lower()
    filtered_config["log_level"] = filtered_config.get("log_level", "INFO").upper()

    return JobConfig(**filtered_config)
