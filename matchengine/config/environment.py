"""Environment variable loading and validation."""

import os
from typing import Optional

from .exceptions import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./data/match_engine.db"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        log_level: Optional[str] = None,
        environment: Optional[str] = None,
    ):
        self.database_url = database_url or DEFAULT_DATABASE_URL
        self.log_level = log_level
        self.environment = environment or "local"


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    Optional environment variables:
    - DATABASE_URL: SQLAlchemy URL for the sql storage backend
      (default: sqlite:///./data/match_engine.db)
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - ENVIRONMENT: Label attached to every log record (default: local)

    Returns:
        EnvironmentConfig object with validated values

    Raises:
        ConfigurationError: If a variable is set to an invalid value
    """
    errors = []

    database_url = os.getenv("DATABASE_URL")
    log_level = os.getenv("LOG_LEVEL")
    environment = os.getenv("ENVIRONMENT")

    if database_url is not None and "://" not in database_url:
        errors.append(
            f"Invalid DATABASE_URL: '{database_url}'. Expected a URL like sqlite:///./data/match_engine.db"
        )

    if log_level:
        if log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(
                f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        else:
            log_level = log_level.upper()

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and adjust the values",
                "Unset variables you do not need; all of them are optional",
            ],
        )

    return EnvironmentConfig(
        database_url=database_url,
        log_level=log_level,
        environment=environment,
    )
