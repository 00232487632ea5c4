"""Explicit context handed to every tool handler invocation."""

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Optional

from shared.config import Settings

if TYPE_CHECKING:
    from editor.bridge import EditorBridge
    from interpreter.executor import PythonExecutor
    from interpreter.lifecycle import LifecycleController
    from mcp_server.correlator import Correlator
    from mcp_server.nonces import NonceStore
    from mcp_server.registry import ToolRegistry


@dataclass(frozen=True)
class ToolContext:
    """
    Services and request metadata available to a tool handler.

    One base context is built per server instance; the router derives a
    per-call copy carrying the request id and client address.
    """
    settings: Settings
    registry: "ToolRegistry"
    correlator: "Correlator"
    nonces: "NonceStore"
    editor: "EditorBridge"
    executor: "PythonExecutor"
    lifecycle: "LifecycleController"
    port: int = 0
    rpc_id: Optional[Any] = None
    client_ip: Optional[str] = None

    def for_call(self, rpc_id: Optional[Any], client_ip: Optional[str] = None) -> "ToolContext":
        return replace(self, rpc_id=rpc_id, client_ip=client_ip)
