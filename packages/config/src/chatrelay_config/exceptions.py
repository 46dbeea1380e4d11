"""Custom exceptions for the config package.

Built on the common exception framework from chatrelay_common.
"""

from chatrelay_common import (
    ConfigurationError,
    NotFoundError,
    ValidationError,
)

ConfigError = ConfigurationError


class ConfigFileNotFoundError(NotFoundError):
    """Raised when an explicitly requested settings file does not exist."""

    pass


class InvalidOverrideError(ValidationError):
    """Raised when an environment override cannot be applied."""

    pass
