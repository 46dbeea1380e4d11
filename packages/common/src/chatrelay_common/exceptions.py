"""Common exception hierarchy for all chatrelay packages.

Every error raised by the gateway derives from :class:`RelayError`, which
carries an optional context dictionary alongside the message. Packages
extend the hierarchy with their own specific types.

Example:
    ```python
    from chatrelay_common.exceptions import ValidationError, RelayError

    raise ValidationError("message is required", context={"field": "message"})

    try:
        await orchestrator.send_message(text)
    except RelayError as e:
        logger.error("Turn failed: %s", e)
        if e.context:
            logger.error("Context: %s", e.context)
    ```
"""

from typing import Any, Dict


class RelayError(Exception):
    """Base exception for all chatrelay packages.

    Attributes:
        context: Dictionary containing contextual information about the error
        details: Alias for context

    Args:
        message: Human-readable error message
        context: Optional dictionary with error context
        details: Alternative to context (takes precedence when both given)
    """

    def __init__(
        self,
        message: str,
        context: Dict[str, Any] | None = None,
        details: Dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.context = details or context or {}
        self.details = self.context


class ValidationError(RelayError):
    """Raised when caller input or configuration fails validation.

    Example:
        ```python
        raise ValidationError("message is required", context={"field": "message"})
        ```
    """

    pass


class ConfigurationError(RelayError):
    """Raised when configuration is invalid or missing."""

    pass


class ResourceError(RelayError):
    """Raised when a resource (store, connection) cannot be used."""

    pass


class NotFoundError(RelayError):
    """Raised when a requested item is not found."""

    pass


class OperationError(RelayError):
    """Raised when an operation fails.

    Used for network and backend failures that don't fit other categories.
    """

    pass


class SerializationError(RelayError):
    """Raised when serialization or deserialization fails."""

    pass


__all__ = [
    "RelayError",
    "ValidationError",
    "ConfigurationError",
    "ResourceError",
    "NotFoundError",
    "OperationError",
    "SerializationError",
]
