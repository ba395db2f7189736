"""Configuration loading utilities."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from execgate.config.schema import Config

# Maps whose keys are user data (bin names), not field names
OPAQUE_KEY_MAPS = frozenset(["safe_bin_profiles", "safeBinProfiles"])


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".execgate" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValidationError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump(by_alias=True))

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    return _convert(data, camel_to_snake)


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    return _convert(data, snake_to_camel)


def _convert(data: Any, fn, opaque: bool = False) -> Any:
    if isinstance(data, dict):
        return {
            (k if opaque else fn(k)): _convert(v, fn, opaque=not opaque and k in OPAQUE_KEY_MAPS)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_convert(item, fn) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
