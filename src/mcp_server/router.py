"""Protocol Router for the MCP server.

Consumes a raw JSON-RPC body, dispatches it to a lifecycle method or a
registered tool, and always produces a well-formed reply envelope together
with an HTTP status.
"""

import asyncio
import functools
import inspect
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from shared import __version__
from shared.errors import ErrorCode, InternalError, ProtocolError
from shared.logging import bind_context, clear_context, get_logger
from shared.models import (
    SENTINEL_ID,
    JsonRpcRequest,
    JsonRpcResponse,
    ToolCallStatus,
    ToolDefinition,
)
from mcp_server.audit import AuditLogger
from mcp_server.context import ToolContext
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "replbridge"

RouterReply = tuple[int, dict[str, Any]]


class RpcMethod(str, Enum):
    """JSON-RPC methods understood by the router."""
    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"


def recover_id(data: Any) -> Any:
    """Best-effort request id from a decoded body, else the sentinel."""
    if isinstance(data, dict):
        raw_id = data.get("id")
        if isinstance(raw_id, (int, str)) and not isinstance(raw_id, bool):
            return raw_id
    return SENTINEL_ID


def describe_exception(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class ProtocolRouter:
    """
    Routes JSON-RPC envelopes.

    Responsibilities:
    - Reject empty or malformed envelopes
    - Dispatch known methods through a closed table
    - Resolve and invoke tools with an explicit context
    - Convert any failure into an error reply for this request only
    - Audit all tool calls
    """

    def __init__(
        self,
        registry: ToolRegistry,
        context: ToolContext,
        audit_logger: Optional[AuditLogger] = None
    ) -> None:
        self.registry = registry
        self.context = context
        self.audit_logger = audit_logger or AuditLogger(enabled=False)
        self._dispatch: dict[RpcMethod, Callable[[JsonRpcRequest, ToolContext], Awaitable[RouterReply]]] = {
            RpcMethod.INITIALIZE: self._initialize,
            RpcMethod.INITIALIZED: self._initialized,
            RpcMethod.TOOLS_LIST: self._tools_list,
            RpcMethod.TOOLS_CALL: self._tools_call,
        }

    async def handle(self, body: bytes, client_ip: Optional[str] = None) -> RouterReply:
        """
        Handle one raw request body.

        Args:
            body: Raw HTTP request body
            client_ip: Client address, recorded in the per-call context

        Returns:
            Tuple of (HTTP status, reply payload)
        """
        rpc_id: Any = SENTINEL_ID
        try:
            if not body or not body.strip():
                raise ProtocolError(
                    ErrorCode.INVALID_REQUEST, "Invalid Request - empty body", http_status=400
                )

            data = json.loads(body)
            rpc_id = recover_id(data)

            if not isinstance(data, dict) or "method" not in data:
                raise ProtocolError(
                    ErrorCode.INVALID_REQUEST,
                    "Invalid Request - missing method field",
                    http_status=400
                )

            try:
                request = JsonRpcRequest.model_validate(data)
            except ValidationError as e:
                raise ProtocolError(
                    ErrorCode.INVALID_REQUEST,
                    "Invalid Request - malformed envelope",
                    http_status=400,
                    data=[err["msg"] for err in e.errors()]
                ) from e

            bind_context(rpc_id=rpc_id, method=request.method)

            try:
                method = RpcMethod(request.method)
            except ValueError:
                raise ProtocolError(
                    ErrorCode.METHOD_NOT_FOUND,
                    f"Method not found: {request.method}",
                    http_status=404
                ) from None

            context = self.context.for_call(request.id, client_ip)
            return await self._dispatch[method](request, context)

        except ProtocolError as e:
            logger.info("Protocol error", code=int(e.code), error=e.message)
            return e.http_status, JsonRpcResponse.failure(rpc_id, e.code, e.message, e.data).to_payload()
        except Exception as e:
            logger.error("Request failed", error=describe_exception(e), exc_info=True)
            error = e if isinstance(e, InternalError) else InternalError(describe_exception(e))
            return error.http_status, JsonRpcResponse.failure(rpc_id, error.code, error.message).to_payload()
        finally:
            clear_context()

    async def _initialize(self, request: JsonRpcRequest, context: ToolContext) -> RouterReply:
        result = {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }
        logger.info("Client initialized session", client=context.client_ip)
        return 200, JsonRpcResponse.success(request.id, result).to_payload()

    async def _initialized(self, request: JsonRpcRequest, context: ToolContext) -> RouterReply:
        if request.id is None:
            # Notification: empty acknowledgment
            return 200, {}
        return 200, JsonRpcResponse.success(request.id, {}).to_payload()

    async def _tools_list(self, request: JsonRpcRequest, context: ToolContext) -> RouterReply:
        result = {"tools": self.registry.listing()}
        return 200, JsonRpcResponse.success(request.id, result).to_payload()

    async def _tools_call(self, request: JsonRpcRequest, context: ToolContext) -> RouterReply:
        params = request.params or {}
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError(
                ErrorCode.INVALID_PARAMS, "Invalid params - missing tool name", http_status=400
            )

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ProtocolError(
                ErrorCode.INVALID_PARAMS,
                "Invalid params - arguments must be an object",
                http_status=400
            )

        tool_id = self.registry.resolve(name)
        tool = self.registry.get_by_id(tool_id) if tool_id else None
        if tool is None:
            await self._audit(name, arguments, ToolCallStatus.NOT_FOUND, context)
            raise ProtocolError(ErrorCode.INVALID_PARAMS, f"Tool not found: {name}", http_status=404)

        is_valid, errors = self.registry.validate_arguments(name, arguments)
        if not is_valid:
            await self._audit(
                name, arguments, ToolCallStatus.INVALID_PARAMS, context,
                tool=tool, error="; ".join(errors)
            )
            raise ProtocolError(
                ErrorCode.INVALID_PARAMS,
                f"Invalid params for tool {name}: {'; '.join(errors)}",
                http_status=400,
                data=errors
            )

        start_time = time.perf_counter()
        try:
            text = await self._invoke(tool, arguments, context)
        except Exception as e:
            elapsed = (time.perf_counter() - start_time) * 1000
            await self._audit(
                name, arguments, ToolCallStatus.ERROR, context,
                tool=tool, error=describe_exception(e), execution_time_ms=elapsed
            )
            raise

        elapsed = (time.perf_counter() - start_time) * 1000
        await self._audit(
            name, arguments, ToolCallStatus.SUCCESS, context,
            tool=tool, execution_time_ms=elapsed
        )

        result = {"content": [{"type": "text", "text": text}]}
        return 200, JsonRpcResponse.success(request.id, result).to_payload()

    async def _invoke(
        self,
        tool: ToolDefinition,
        arguments: dict[str, Any],
        context: ToolContext
    ) -> str:
        """Run a handler, off the event loop when it is synchronous."""
        handler = tool.handler
        if inspect.iscoroutinefunction(handler):
            result = await handler(arguments, context)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None, functools.partial(handler, arguments, context)
            )
            if inspect.isawaitable(result):
                result = await result

        if result is None:
            return ""
        return result if isinstance(result, str) else str(result)

    async def _audit(
        self,
        name: str,
        arguments: dict[str, Any],
        status: ToolCallStatus,
        context: ToolContext,
        tool: Optional[ToolDefinition] = None,
        error: Optional[str] = None,
        execution_time_ms: float = 0
    ) -> None:
        entry = self.audit_logger.create_entry(
            tool_name=name,
            arguments=arguments,
            status=status,
            tool=tool,
            error=error,
            execution_time_ms=execution_time_ms,
            rpc_id=context.rpc_id,
            client_ip=context.client_ip,
        )
        await self.audit_logger.log(entry)
