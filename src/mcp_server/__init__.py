"""MCP Server - security gate, protocol routing and editor correlation.

The server validates every request against the workspace security policy,
routes JSON-RPC envelopes to registered tools, and pairs editor commands
with the replies the editor posts back to the relay endpoint.
"""

from mcp_server.registry import ToolRegistry
from mcp_server.router import ProtocolRouter
from mcp_server.auth import Admission, GateRequest, SecurityGate
from mcp_server.audit import AuditLogger
from mcp_server.correlator import Correlator
from mcp_server.nonces import NonceStore
from mcp_server.context import ToolContext

__all__ = [
    "ToolRegistry",
    "ProtocolRouter",
    "Admission",
    "GateRequest",
    "SecurityGate",
    "AuditLogger",
    "Correlator",
    "NonceStore",
    "ToolContext",
]
