"""Configuration loading and saving."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from supportbot.config.schema import Config


def get_data_dir() -> Path:
    """Get the SupportBot data directory (~/.supportbot)."""
    path = Path.home() / ".supportbot"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_dir() / "config.json"


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    first, *rest = name.split("_")
    return first + "".join(word.capitalize() for word in rest)


def _convert_keys(data: Any, convert) -> Any:
    if isinstance(data, dict):
        return {convert(k): _convert_keys(v, convert) for k, v in data.items()}
    if isinstance(data, list):
        return [_convert_keys(item, convert) for item in data]
    return data


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, falling back to defaults.

    Keys may be camelCase or snake_case. Environment variables
    (SUPPORTBOT_*) fill in anything the file leaves unset.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse config from {path}: {e}")
            logger.warning("Using default configuration.")
            return Config()

        # Weekday keys are lowercase, so converting every key leaves them intact
        return Config(**_convert_keys(data, camel_to_snake))

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """
    Save configuration to file with camelCase keys.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.

    Returns:
        The path written.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = _convert_keys(config.model_dump(), snake_to_camel)
    path.write_text(json.dumps(data, indent=2))
    return path
