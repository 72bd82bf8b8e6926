"""Environment variable validation and typed accessors for the scoring service."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "CATALOG_PATH": "challenges.yaml",
    "LLM_URL": "http://localhost:4891/v1/chat/completions",
    "EMBEDDING_URL": "http://localhost:4891/v1/embeddings",
    "EMBEDDING_MODEL": "text-embedding-004",
    "JUDGE_PRIMARY_MODEL": "judge-large",
    "JUDGE_FALLBACK_MODEL": "judge-lite",
    "JUDGE_SECOND_FALLBACK_MODEL": "judge-flash",
    "LLM_TIMEOUT": "60",
    "EMBEDDING_TIMEOUT": "15",
    "SUBMISSION_COOLDOWN_SECONDS": "30",
}

OPTIONAL_VARS: Dict[str, str] = {
    "LLM_API_KEY": "Bearer token for the judge endpoint",
    "JUDGE_SECONDARY_MODEL": "Model used for cross-validation (defaults to the fallback model)",
}

URL_VARS = {"LLM_URL", "EMBEDDING_URL"}
NUMERIC_VARS = {"LLM_TIMEOUT", "EMBEDDING_TIMEOUT", "SUBMISSION_COOLDOWN_SECONDS"}


def validate_environment() -> None:
    """Apply defaults and validate the service configuration.

    Raises EnvironmentError if a URL or numeric variable is malformed.
    """
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var in URL_VARS:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in NUMERIC_VARS:
        value = os.getenv(var, "")
        try:
            if float(value) <= 0:
                raise ValueError
        except ValueError:
            raise EnvironmentError(f"{var} must be a positive number, got {value!r}")

    for var, description in OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using default %s", name, value, default)
        return default


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid float for %s=%r; using default %s", name, value, default)
        return default
