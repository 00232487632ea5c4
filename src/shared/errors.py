"""Error taxonomy for replbridge.

Protocol faults are recoverable and rendered as JSON-RPC errors, auth faults
are rendered as plain HTTP rejections, and anything else escaping a tool
handler becomes an internal error for that request only.
"""

from enum import IntEnum
from typing import Any, Optional


class ErrorCode(IntEnum):
    """JSON-RPC error codes used by the protocol router."""
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class ReplBridgeError(Exception):
    """Base class for all replbridge errors."""


class ProtocolError(ReplBridgeError):
    """A malformed envelope, unknown method, or unknown tool."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 400,
        data: Optional[Any] = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.data = data


class InternalError(ReplBridgeError):
    """An unexpected failure while serving a single request."""

    code = ErrorCode.INTERNAL_ERROR
    http_status = 500

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.message = f"Internal error: {description}"


class AuthError(ReplBridgeError):
    """Rejection issued by the security gate (401 or 403)."""

    def __init__(self, message: str, http_status: int = 401) -> None:
        super().__init__(message)
        self.message = message
        self.http_status = http_status


class RegistryError(ValueError):
    """Raised when a tool registry would contain conflicting entries."""


class CorrelationTimeout(TimeoutError):
    """No correlated reply arrived before the wait deadline."""

    def __init__(self, request_id: str, timeout: float) -> None:
        super().__init__(
            f"Timeout waiting for editor response (request_id: {request_id}, "
            f"timeout: {timeout}s)"
        )
        self.request_id = request_id
        self.timeout = timeout


class SecurityConfigError(ReplBridgeError):
    """Security configuration is missing or cannot be loaded."""


class EditorError(ReplBridgeError):
    """The editor could not be reached or its settings could not be read."""
