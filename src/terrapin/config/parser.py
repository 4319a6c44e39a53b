"""Configuration loading from terrapin.yaml."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from terrapin.config.models import TerrapinConfig
from terrapin.utils.errors import ConfigurationError
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)

CONFIG_FILENAME = "terrapin.yaml"


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into base; None values are ignored."""
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _format_errors(error: ValidationError) -> List[Dict]:
    return [
        {"loc": list(item["loc"]), "msg": item["msg"]}
        for item in error.errors()
    ]


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> TerrapinConfig:
    """Load and validate configuration.

    Args:
        config_path: Path to the configuration file. When omitted,
            ./terrapin.yaml is used if present, otherwise defaults apply.
        overrides: Nested values (typically CLI options) taking precedence
            over the file

    Returns:
        Validated TerrapinConfig

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    data: Dict[str, Any] = {}

    if config_path is None and Path(CONFIG_FILENAME).exists():
        config_path = CONFIG_FILENAME

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML in {path}: {e}", cause=e)

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        logger.debug(f"Loaded configuration from {path}")

    data = _merge(data, overrides or {})

    try:
        return TerrapinConfig.model_validate(data)
    except ValidationError as e:
        errors = _format_errors(e)
        raise ConfigurationError(
            f"Configuration validation failed with {len(errors)} error(s)",
            errors
        )
