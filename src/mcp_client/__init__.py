"""MCP Client - JSON-RPC access to a running replbridge server.

Used by the command line `check` command; reusable by any script that
wants to drive the interpreter session remotely.
"""

from mcp_client.client import (
    MCPAuthError,
    MCPClient,
    MCPClientError,
    MCPConnectionError,
    MCPRpcError,
)

__all__ = [
    "MCPClient",
    "MCPClientError",
    "MCPConnectionError",
    "MCPAuthError",
    "MCPRpcError",
]
