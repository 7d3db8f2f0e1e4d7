"""Controller configuration: schemas and loading from YAML and environment."""

from .exceptions import ConfigError
from .loader import load_from_env, load_settings, load_yaml_file, merge_dicts
from .schema import ClassRuleConfig, ControllerSettings, LoggingConfig, ModelClassConfig

__all__ = [
    "ClassRuleConfig",
    "ConfigError",
    "ControllerSettings",
    "LoggingConfig",
    "ModelClassConfig",
    "load_from_env",
    "load_settings",
    "load_yaml_file",
    "merge_dicts",
]
