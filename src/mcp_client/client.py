"""MCP Client for a running replbridge server.

Speaks JSON-RPC over HTTP: session initialization, tool listing and tool
calls, plus the plain health endpoint.
"""

import itertools
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger
from shared.models import JSONRPC_VERSION

logger = get_logger(__name__)


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Connection to the server failed."""
    pass


class MCPAuthError(MCPClientError):
    """The security gate rejected the request."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class MCPRpcError(MCPClientError):
    """The server answered with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data


class MCPClient:
    """
    Client for a replbridge server.

    Provides methods for:
    - Health checks
    - Session initialization
    - Tool discovery and tool calls
    """

    def __init__(
        self,
        server_url: str = "http://127.0.0.1:3000",
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize MCP Client.

        Args:
            server_url: Server base URL
            timeout: Request timeout in seconds
            api_key: API key sent as a bearer credential
            transport: Custom httpx transport (e.g. for in-process testing)
        """
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.server_url,
                timeout=self.timeout,
                headers=self._get_headers(),
                transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MCPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def _check_auth(response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            try:
                message = response.json().get("error", response.text)
            except ValueError:
                message = response.text
            raise MCPAuthError(message, response.status_code)

    @retry(
        retry=retry_if_exception_type(MCPConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def health_check(self) -> dict[str, Any]:
        """
        Check server health.

        Returns:
            Health status including version and tool count

        Raises:
            MCPConnectionError: If the server is unreachable
            MCPAuthError: If the security gate rejects the request
        """
        try:
            client = await self._get_client()
            response = await client.get("/health")
        except httpx.TransportError as e:
            raise MCPConnectionError(f"Cannot connect to server: {e}") from e

        self._check_auth(response)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MCPClientError(f"Health check failed: {e}") from e
        return response.json()

    async def request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        Send one JSON-RPC request and return its result.

        Raises:
            MCPConnectionError: If the server is unreachable
            MCPAuthError: If the security gate rejects the request
            MCPRpcError: If the reply carries an error
        """
        envelope: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": next(self._ids),
            "method": method,
        }
        if params is not None:
            envelope["params"] = params

        logger.debug("Sending request", method=method, rpc_id=envelope["id"])
        try:
            client = await self._get_client()
            response = await client.post("/", json=envelope)
        except httpx.TransportError as e:
            raise MCPConnectionError(f"Cannot connect to server: {e}") from e

        self._check_auth(response)
        try:
            data = response.json()
        except ValueError as e:
            raise MCPClientError(f"Invalid reply (HTTP {response.status_code})") from e

        if "error" in data:
            error = data["error"]
            raise MCPRpcError(error.get("code", 0), error.get("message", ""), error.get("data"))
        return data.get("result")

    async def notify(self, method: str) -> None:
        """Send a notification (no id). The server acknowledges with an empty body."""
        try:
            client = await self._get_client()
            response = await client.post("/", json={"jsonrpc": JSONRPC_VERSION, "method": method})
        except httpx.TransportError as e:
            raise MCPConnectionError(f"Cannot connect to server: {e}") from e
        self._check_auth(response)

    async def initialize(self) -> dict[str, Any]:
        """Open a session and return the server's capabilities."""
        result = await self.request("initialize", {})
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> list[dict[str, Any]]:
        """List the tools exposed by the server."""
        result = await self.request("tools/list")
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> str:
        """
        Call a tool and return its text.

        Args:
            name: External tool name
            arguments: Tool arguments

        Returns:
            Concatenated text content of the result
        """
        result = await self.request("tools/call", {"name": name, "arguments": arguments or {}})
        return "".join(
            item.get("text", "") for item in result.get("content", []) if item.get("type") == "text"
        )
