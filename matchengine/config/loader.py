"""Configuration loader for the match engine."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .models import EngineConfig
from .validators import check_for_warnings, emit_warnings

DEFAULT_CONFIG_LOCATIONS = (
    Path("config.yaml"),
    Path("config") / "config.yaml",
)


def load_config(config_path: Optional[Path] = None) -> Tuple[EngineConfig, EnvironmentConfig]:
    """
    Load and validate configuration from a YAML file and environment variables.

    Lookup order for the file: the explicit config_path, then config.yaml,
    then config/config.yaml.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Tuple of (EngineConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If configuration is invalid or file not found
    """
    config_file = _find_config_file(config_path)
    config_dict = _read_yaml(config_file)

    # An empty file is a valid "all defaults" configuration
    if config_dict is None:
        config_dict = {}

    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"Configuration root must be a mapping, got {type(config_dict).__name__}",
            suggestions=["Review config.example.yaml for the expected layout"],
        )

    warning_messages = check_for_warnings(config_dict)
    if warning_messages:
        emit_warnings(warning_messages)

    engine_config = parse_config_dict(config_dict)

    # Relative seed paths are resolved against the config file's directory
    if engine_config.seed_file is not None and not engine_config.seed_file.is_absolute():
        engine_config.seed_file = (config_file.parent / engine_config.seed_file).resolve()

    env_config = load_environment_config()
    return engine_config, env_config


def parse_config_dict(config_dict: Dict[str, Any]) -> EngineConfig:
    """
    Validate a raw configuration dictionary into an EngineConfig.

    Raises:
        ConfigurationError: With one readable line per pydantic error
    """
    try:
        return EngineConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            "Configuration validation failed",
            errors=_format_validation_errors(e),
            suggestions=[
                "Review config.example.yaml for correct format",
                "Verify field types match the expected schema",
            ],
        ) from e


def _format_validation_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field_path = " -> ".join(str(loc) for loc in item["loc"]) or "(root)"
        error_type = item["type"]

        if error_type == "missing":
            messages.append(f"Missing required field: {field_path}")
        elif error_type.endswith("_type") or error_type.endswith("_parsing"):
            messages.append(
                f"Invalid type for '{field_path}': {item['msg']} (got {item.get('input')!r})"
            )
        elif error_type == "extra_forbidden":
            messages.append(f"Unknown field: {field_path}")
        else:
            messages.append(f"{field_path}: {item['msg']}")
    return messages


def _read_yaml(config_file: Path) -> Any:
    try:
        with open(config_file, "r") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {e}",
            suggestions=[
                "Check YAML syntax in your config file",
                "Ensure proper indentation (use spaces, not tabs)",
            ],
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {e}",
            suggestions=[f"Ensure {config_file} exists and is readable"],
        ) from e


def _find_config_file(config_path: Optional[Path] = None) -> Path:
    if config_path:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(
                f"Specified configuration file not found: {config_path}",
                suggestions=[f"Ensure {config_path} exists", "Check the path and try again"],
            )
        return config_path

    for candidate in DEFAULT_CONFIG_LOCATIONS:
        if candidate.exists():
            return candidate

    raise ConfigurationError(
        "Configuration file not found",
        errors=[f"Tried: {candidate}" for candidate in DEFAULT_CONFIG_LOCATIONS],
        suggestions=[
            "Copy config.example.yaml to config.yaml",
            "Use --config flag to specify a custom location",
        ],
    )
