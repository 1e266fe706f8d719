"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentConfigError(Exception):
    """Raised when configuration from the environment is invalid."""
    pass


def validate_environment() -> None:
    """Validate the tutor's environment variables.

    Nothing is strictly required: without ``OPENAI_API_KEY`` the chat endpoint
    answers in fallback mode. Raises EnvironmentConfigError for values that
    cannot work at all.
    """
    optional_vars: Dict[str, str] = {
        "OPENAI_API_KEY": "OpenAI credential; chat falls back to demo answers without it",
        "TUTOR_CONTENT_PATH": "Path to the lesson content JSON",
        "TUTOR_PROMPT_LOG_PATH": "Path to the append-only prompt log",
    }

    url_vars = {"OPENAI_API_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentConfigError(f"Invalid URL format for {var}: {value}")

    raw_tokens = os.getenv("OPENAI_MAX_COMPLETION_TOKENS", "")
    if raw_tokens and get_env_int("OPENAI_MAX_COMPLETION_TOKENS", 0) <= 0:
        raise EnvironmentConfigError(
            f"OPENAI_MAX_COMPLETION_TOKENS must be a positive integer: {raw_tokens}"
        )

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

    content_path = os.getenv("TUTOR_CONTENT_PATH")
    if content_path and not Path(content_path).is_file():
        logger.warning("Content file %s does not exist; chat requests will fail", content_path)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except (TypeError, ValueError):
        return default
