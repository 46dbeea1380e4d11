"""Shared exception hierarchy for chatrelay packages.

Example:
    ```python
    from chatrelay_common import RelayError, ValidationError

    raise ValidationError("message is required")
    ```
"""

from chatrelay_common.exceptions import (
    ConfigurationError,
    NotFoundError,
    OperationError,
    RelayError,
    ResourceError,
    SerializationError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "RelayError",
    "ValidationError",
    "ConfigurationError",
    "ResourceError",
    "NotFoundError",
    "OperationError",
    "SerializationError",
]
