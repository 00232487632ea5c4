"""Core data models for replbridge.

This module defines the shared data structures used across the server:
tool definitions, JSON-RPC envelopes, security policy, relay messages,
and audit entries.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    model_validator,
)

from shared.errors import ErrorCode

JSONRPC_VERSION = "2.0"

# Identifier used on replies whose request id cannot be recovered
SENTINEL_ID = 0

RpcId = Union[StrictInt, StrictStr]


class SecurityMode(str, Enum):
    """Strictness of the security gate when a policy is configured."""
    LAX = "lax"
    RELAXED = "relaxed"
    STRICT = "strict"


class SecurityPolicy(BaseModel):
    """Security policy loaded from the workspace configuration.

    The absence of a policy object means the server is open.
    """
    mode: SecurityMode = Field(default=SecurityMode.STRICT)
    api_keys: list[str] = Field(default_factory=list)
    allowed_ips: list[str] = Field(default_factory=lambda: ["127.0.0.1", "::1"])
    port: int = Field(default=0, ge=0, le=65535)
    created_at: int = Field(default_factory=lambda: int(time.time()))


class ToolDefinition(BaseModel):
    """
    Complete definition of a tool exposed over JSON-RPC.

    `id` is the stable internal identifier, `name` the external name used
    in `tools/call`. The handler accepts `(arguments, context)` and returns
    text, either directly or as an awaitable.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str = Field(..., description="Stable internal identifier")
    name: str = Field(..., description="External name, unique across the registry")
    description: str = Field(..., description="Description shown to clients")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []},
        description="JSON Schema for the tool arguments"
    )
    handler: Callable[..., Any] = Field(..., exclude=True)
    toolset: str = Field(default="core")

    def listing(self) -> dict[str, Any]:
        """Return the name/description/schema triple used by `tools/list`."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class JsonRpcRequest(BaseModel):
    """A parsed JSON-RPC request envelope. Absent `id` means notification."""
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = Field(default=JSONRPC_VERSION)
    id: Optional[RpcId] = None
    method: str
    params: Optional[dict[str, Any]] = None


class JsonRpcError(BaseModel):
    """Error member of a JSON-RPC reply."""
    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    """A JSON-RPC reply carrying exactly one of result or error."""
    jsonrpc: str = Field(default=JSONRPC_VERSION)
    id: RpcId = SENTINEL_ID
    result: Optional[Any] = None
    error: Optional[JsonRpcError] = None

    @model_validator(mode="after")
    def _one_of_result_or_error(self) -> "JsonRpcResponse":
        if (self.result is None) == (self.error is None):
            raise ValueError("A reply must carry exactly one of result or error")
        return self

    @classmethod
    def success(cls, rpc_id: Optional[Any], result: Any) -> "JsonRpcResponse":
        return cls(id=SENTINEL_ID if rpc_id is None else rpc_id, result=result)

    @classmethod
    def failure(
        cls,
        rpc_id: Optional[Any],
        code: ErrorCode,
        message: str,
        data: Optional[Any] = None
    ) -> "JsonRpcResponse":
        return cls(
            id=SENTINEL_ID if rpc_id is None else rpc_id,
            error=JsonRpcError(code=int(code), message=message, data=data),
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the wire shape, omitting the unused member."""
        payload: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error.model_dump(exclude_none=True)
        else:
            payload["result"] = self.result
        return payload


class RelayMessage(BaseModel):
    """Asynchronous reply posted by the editor to the relay endpoint."""
    model_config = ConfigDict(extra="ignore")

    request_id: str
    result: Optional[Any] = None
    error: Optional[Any] = None


class CorrelatedReply(BaseModel):
    """Outcome delivered to a caller waiting on a correlation id."""
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolCallStatus(str, Enum):
    """Status of a tool invocation."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    INVALID_PARAMS = "invalid_params"


class AuditEntry(BaseModel):
    """
    Audit log entry for tool invocations.

    Captures tool, arguments, timing, and outcome for every `tools/call`.
    """
    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    tool_name: str
    tool_id: Optional[str] = None
    toolset: Optional[str] = None

    arguments: dict[str, Any] = Field(default_factory=dict)

    status: ToolCallStatus
    error: Optional[str] = None
    execution_time_ms: float = 0

    rpc_id: Optional[Union[int, str]] = None
    client_ip: Optional[str] = None
