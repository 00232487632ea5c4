"""Security gate for the MCP server.

Handles:
- Single-use nonce exchange on the relay endpoint
- Static API key validation
- Client address allow-listing

The gate runs before any protocol logic. It never mutates shared state
except by consuming a nonce.
"""

import fnmatch
import ipaddress
import json
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from shared.errors import AuthError
from shared.logging import get_logger
from shared.models import SecurityMode, SecurityPolicy
from mcp_server.nonces import NonceStore

logger = get_logger(__name__)

RELAY_PATH = "/vscode-response"


class Admission(str, Enum):
    """How a request was admitted."""
    OPEN = "open"
    NONCE = "nonce"
    LAX = "lax"
    CREDENTIALS = "credentials"


@dataclass(frozen=True)
class GateRequest:
    """The parts of an HTTP request the gate looks at."""
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    peer: Optional[str] = None
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    @property
    def is_relay(self) -> bool:
        return self.method.upper() == "POST" and self.path == RELAY_PATH


def extract_bearer(request: GateRequest) -> Optional[str]:
    """
    Extract the credential from the Authorization header.

    Supports "Bearer <token>" or a bare token. Returns None when the header
    is absent.
    """
    value = request.header("authorization")
    if value is None:
        return None
    if value.startswith("Bearer "):
        return value[len("Bearer "):].strip()
    return value.strip()


def get_client_ip(request: GateRequest, trust_forwarded_for: bool = False) -> str:
    """
    Extract the client address.

    Checks X-Forwarded-For first (first hop), then falls back to the peer.
    """
    if trust_forwarded_for:
        forwarded = request.header("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.peer or ""


def ip_matches(ip: str, pattern: str) -> bool:
    """Match an address against an exact value, CIDR network or wildcard."""
    if ip == pattern:
        return True
    if "/" in pattern:
        try:
            return ipaddress.ip_address(ip) in ipaddress.ip_network(pattern, strict=False)
        except ValueError:
            return False
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(ip, pattern)
    return False


def validate_api_key(key: str, policy: SecurityPolicy) -> bool:
    """
    Validate an API key against the policy.

    In lax mode an empty key is accepted; a non-empty key must still be a
    configured key in every mode.
    """
    if policy.mode == SecurityMode.LAX and not key:
        return True
    # Header values are latin-1 text; compare bytes so any value is comparable
    presented = key.encode()
    return any(secrets.compare_digest(presented, candidate.encode()) for candidate in policy.api_keys)


def validate_ip(ip: str, policy: SecurityPolicy) -> bool:
    """Validate a client address against the allow-list."""
    if policy.mode == SecurityMode.RELAXED:
        return True
    return any(ip_matches(ip, pattern) for pattern in policy.allowed_ips)


def relay_request_id(body: bytes) -> Optional[str]:
    """Correlation id carried in a relay body, if it can be read."""
    try:
        data = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    request_id = data.get("request_id")
    if request_id is None or isinstance(request_id, (dict, list, bool)):
        return None
    return str(request_id)


class SecurityGate:
    """
    Evaluates inbound requests against the configured policy.

    With no policy the gate admits everything. Otherwise the relay route
    accepts a nonce bound to the correlation id in the body; every other
    route goes through API key and address checks, whose strictness
    depends on the policy mode.
    """

    def __init__(
        self,
        policy: Optional[SecurityPolicy],
        nonces: NonceStore,
        trust_forwarded_for: bool = False
    ) -> None:
        self.policy = policy
        self.nonces = nonces
        self.trust_forwarded_for = trust_forwarded_for

    @property
    def mode(self) -> Optional[SecurityMode]:
        return self.policy.mode if self.policy else None

    def evaluate(self, request: GateRequest) -> Admission:
        """
        Admit a request or raise.

        Args:
            request: Method, path, headers, peer address and raw body

        Returns:
            How the request was admitted

        Raises:
            AuthError: 401 for missing or rejected credentials, 403 for an
                invalid key or a disallowed address
        """
        if self.policy is None:
            return Admission.OPEN

        if request.is_relay:
            return self._evaluate_relay(request, self.policy)

        return self._check_credentials(request, extract_bearer(request), self.policy)

    def _evaluate_relay(self, request: GateRequest, policy: SecurityPolicy) -> Admission:
        token = extract_bearer(request)
        request_id = relay_request_id(request.body)

        if token is not None and request_id is not None:
            if self.nonces.consume(request_id, token):
                logger.debug("Relay admitted by nonce", request_id=request_id)
                return Admission.NONCE
            logger.warning("Relay rejected: invalid or expired nonce", request_id=request_id)
            raise AuthError("Unauthorized: Invalid or expired nonce", http_status=401)

        if token is None and policy.mode == SecurityMode.LAX:
            return Admission.LAX

        return self._check_credentials(request, token, policy)

    def _check_credentials(
        self,
        request: GateRequest,
        api_key: Optional[str],
        policy: SecurityPolicy
    ) -> Admission:
        if api_key is None and policy.mode != SecurityMode.LAX:
            logger.warning("Request rejected: missing API key", path=request.path)
            raise AuthError(
                "Unauthorized: Missing API key in Authorization header", http_status=401
            )

        if not validate_api_key(api_key or "", policy):
            logger.warning("Request rejected: invalid API key", path=request.path)
            raise AuthError("Forbidden: Invalid API key", http_status=403)

        client_ip = get_client_ip(request, self.trust_forwarded_for)
        if not validate_ip(client_ip, policy):
            logger.warning("Request rejected: address not allowed", client_ip=client_ip)
            raise AuthError(f"Forbidden: IP address {client_ip} not allowed", http_status=403)

        return Admission.LAX if api_key is None else Admission.CREDENTIALS
