"""Configuration management for the match engine."""

from .duration import DurationParseError, parse_duration
from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_config_dict
from .models import (
    EngineConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    QueueCapacity,
    QueueConfig,
    RetryConfig,
    ScoringConfig,
    StorageBackend,
    StorageConfig,
    SweepConfig,
    WorkerConfig,
)

__all__ = [
    # Loader functions
    "load_config",
    "parse_config_dict",
    "load_environment_config",
    "parse_duration",
    # Configuration models
    "EngineConfig",
    "WorkerConfig",
    "QueueConfig",
    "QueueCapacity",
    "RetryConfig",
    "SweepConfig",
    "ScoringConfig",
    "StorageConfig",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "StorageBackend",
    "LogLevel",
    "LogFormat",
    # Exceptions
    "ConfigurationError",
    "DurationParseError",
]
