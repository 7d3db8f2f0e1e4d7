"""Configuration loader module.

This module loads controller settings from a YAML file and from environment
variables (which take precedence), then validates the merged result into a
``ControllerSettings`` object.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError
from .schema import ControllerSettings

logger = logging.getLogger(__name__)

ENV_PREFIX = "BATCHGATE"

# Fixed keys; per-class keys are matched by _CLASS_KEY below.
_ENV_PATHS: Dict[str, List[str]] = {
    "MAX_CONCURRENT_JOBS": ["max_concurrent_jobs"],
    "QUOTA_WINDOW_MS": ["quota_window_ms"],
    "QUOTA_MARGIN_MS": ["quota_margin_ms"],
    "DEFAULT_CLASS": ["default_class"],
    "ITEM_MAX_ATTEMPTS": ["item_max_attempts"],
    "ITEM_RETRY_MIN_WAIT_S": ["item_retry_min_wait_s"],
    "ITEM_RETRY_MAX_WAIT_S": ["item_retry_max_wait_s"],
    "ITEM_TIMEOUT_S": ["item_timeout_s"],
    "POLL_TIMEOUT_S": ["poll_timeout_s"],
    "LOG_LEVEL": ["logging", "level"],
    "LOG_FORMAT": ["logging", "format"],
}

_CLASS_KEY = re.compile(r"^(MAX_CONCURRENT_ITEMS|QUOTA_CAPACITY)_([A-Z0-9_]+)$")
_CLASS_FIELDS = {
    "MAX_CONCURRENT_ITEMS": "max_concurrent_items",
    "QUOTA_CAPACITY": "quota_capacity",
}


def merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary with values that override the base

    Returns:
        Merged dictionary where override values take precedence
    """
    result = dict(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], Mapping) and isinstance(value, Mapping):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


def load_yaml_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Load configuration from YAML file.

    A missing file yields an empty configuration.

    Args:
        path: Path to YAML file

    Returns:
        Dictionary containing configuration from YAML

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    file_path = Path(os.path.expandvars(str(path)))
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.debug("Config file %s not found, using defaults", file_path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {file_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Error reading {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {file_path} must be a mapping")
    return data


def load_from_env(
    env: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX
) -> Dict[str, Any]:
    """Load configuration from environment variables with given prefix.

    Values are kept as strings; pydantic coerces them during validation.

    Args:
        env: Mapping to read from. Defaults to ``os.environ``.
        prefix: Prefix for environment variables to consider

    Returns:
        Nested dictionary containing configuration from environment
    """
    source = os.environ if env is None else env
    result: Dict[str, Any] = {}
    marker = f"{prefix.upper()}_"

    for key, value in source.items():
        if not key.startswith(marker):
            continue
        env_key = key[len(marker):]

        path = _ENV_PATHS.get(env_key)
        if path is None:
            match = _CLASS_KEY.match(env_key)
            if match is None:
                logger.debug("Ignoring unrecognized setting %s", key)
                continue
            field_name = _CLASS_FIELDS[match.group(1)]
            path = ["classes", match.group(2).lower(), field_name]

        current = result
        for part in path[:-1]:
            current = current.setdefault(part, {})
        current[path[-1]] = value

    return result


def _fill_class_defaults(data: Dict[str, Any], file_data: Mapping[str, Any]) -> Dict[str, Any]:
    defaults = ControllerSettings().model_dump()
    if "classes" not in data:
        return data

    if "classes" not in file_data:
        data["classes"] = merge_dicts(defaults["classes"], data["classes"])
    else:
        data["classes"] = {
            name: merge_dicts(defaults["classes"].get(name, {}), cfg)
            if isinstance(cfg, Mapping)
            else cfg
            for name, cfg in data["classes"].items()
        }
    return data


def load_settings(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ControllerSettings:
    """Load, merge and validate controller settings.

    Precedence, lowest first: built-in defaults, YAML file, environment.

    Args:
        path: Optional YAML file. ``BATCHGATE_CONFIG`` is used when omitted.
        env: Environment mapping. Defaults to ``os.environ``.

    Returns:
        Validated settings.

    Raises:
        ConfigError: If the file is unreadable or the merged values are invalid.
    """
    source = os.environ if env is None else env
    if path is None:
        path = source.get(f"{ENV_PREFIX}_CONFIG")

    file_data = load_yaml_file(path) if path else {}
    env_data = load_from_env(source)
    data = _fill_class_defaults(merge_dicts(file_data, env_data), file_data)

    try:
        settings = ControllerSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid controller settings: {e}", context={"errors": e.errors(include_url=False)}
        ) from e

    logger.debug(
        "Loaded settings: max_concurrent_jobs=%d classes=%s",
        settings.max_concurrent_jobs,
        sorted(settings.classes),
    )
    return settings
