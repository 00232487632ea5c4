"""Shared utilities and base classes for replbridge."""

__version__ = "0.1.0"

from shared.models import (
    AuditEntry,
    CorrelatedReply,
    JsonRpcRequest,
    JsonRpcResponse,
    SecurityMode,
    SecurityPolicy,
    ToolDefinition,
)
from shared.errors import AuthError, EditorError, ErrorCode, InternalError, ProtocolError
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "__version__",
    "AuditEntry",
    "CorrelatedReply",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "SecurityMode",
    "SecurityPolicy",
    "ToolDefinition",
    "AuthError",
    "EditorError",
    "ErrorCode",
    "InternalError",
    "ProtocolError",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
