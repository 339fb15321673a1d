"""Loading the per-image build configuration.

The configuration lives in image.yaml in the config directory; an
image.json written by older tooling is read when no YAML file exists.
Every failure surfaces as ConfigError naming the offending key.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ostree_diskimage.errors import ConfigError
from ostree_diskimage.imageconfig.schema import ImageConfig

logger = logging.getLogger(__name__)

IMAGE_YAML = "image.yaml"
IMAGE_JSON = "image.json"


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _error_key(error: ValidationError) -> str:
    """Return the configuration key of the first validation error."""
    errors = error.errors()
    if not errors or not errors[0]["loc"]:
        return "<root>"
    return ".".join(str(part) for part in errors[0]["loc"])


def parse_image_config(data: dict[str, Any]) -> ImageConfig:
    """Parse and validate configuration data.

    Args:
        data: Dictionary of configuration keys.

    Returns:
        Validated ImageConfig.

    Raises:
        ConfigError: If any consumed key has an invalid value.
    """
    try:
        config = ImageConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        raise ConfigError(_error_key(e), first["msg"]) from e

    if config.luks_rootfs is not None:
        logger.warning(
            "image configuration key 'luks_rootfs' is deprecated; use 'rootfs: luks'"
        )
    return config


def load_image_config(config_dir: Path) -> ImageConfig:
    """Load the image configuration from a config directory.

    Args:
        config_dir: Directory containing image.yaml (or image.json).

    Returns:
        Validated ImageConfig.

    Raises:
        ConfigError: If the file is missing, unparsable, or invalid.
    """
    yaml_path = config_dir / IMAGE_YAML
    json_path = config_dir / IMAGE_JSON

    try:
        if yaml_path.exists():
            data = load_yaml(yaml_path)
            source = yaml_path
        elif json_path.exists():
            data = load_json(json_path)
            source = json_path
        else:
            raise ConfigError(
                "<file>", f"no {IMAGE_YAML} or {IMAGE_JSON} in {config_dir}"
            )
    except (yaml.YAMLError, json.JSONDecodeError, ValueError, OSError) as e:
        raise ConfigError("<file>", f"cannot parse configuration: {e}") from e

    logger.info("Loading image configuration from %s", source)
    return parse_image_config(data)


__all__ = [
    "IMAGE_JSON",
    "IMAGE_YAML",
    "load_image_config",
    "load_json",
    "load_yaml",
    "parse_image_config",
]
