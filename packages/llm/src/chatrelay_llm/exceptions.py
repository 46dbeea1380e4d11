"""Custom exceptions for the LLM package.

Built on the common exception framework from chatrelay_common.
"""

from typing import Any, Dict

from chatrelay_common import (
    OperationError,
    RelayError,
    ResourceError,
)

LLMError = RelayError


class TransportError(OperationError):
    """Raised when a backend answers a completion request with a non-success status.

    Attributes:
        status: HTTP status code returned by the backend
        json: Parsed error body, or None when the body was not JSON
        body: Raw error body text
    """

    def __init__(
        self,
        status: int,
        body: str = "",
        json: Any = None,
        context: Dict[str, Any] | None = None,
    ):
        message = f"Failed to send message. HTTP {status}"
        if body:
            message = f"{message} - {body}"
        super().__init__(message, context={"status": status, **(context or {})})
        self.status = status
        self.body = body
        self.json = json


class StreamError(OperationError):
    """Raised when an open event stream fails (connection drop, malformed event)."""

    pass


class StorageError(ResourceError):
    """Exception raised for storage operation errors."""

    pass


class SchemaVersionError(OperationError):
    """Exception raised for schema version incompatibilities."""

    pass
