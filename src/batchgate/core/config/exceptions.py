"""Configuration exception module.

This module defines exception types specific to the configuration system.
"""

from batchgate.core.exceptions import ConfigurationError


class ConfigError(ConfigurationError):
    """Exception raised for configuration errors.

    This includes errors such as:
    - Invalid configuration format
    - Unreadable configuration file
    - Values that fail validation
    """

    pass
