"""Single-use nonces for editor callbacks.

A nonce is issued for exactly one correlation id and handed to the editor
together with that id. The relay endpoint exchanges it for authorization
at most once.
"""

import secrets
import threading
import time
from typing import Optional

from shared.logging import get_logger

logger = get_logger(__name__)


class NonceStore:
    """
    Thread-safe store of nonces keyed by correlation id.

    Consumption removes the entry before comparing, so concurrent attempts
    on the same id cannot both succeed.
    """

    def __init__(self, ttl: float = 60.0) -> None:
        self.ttl = ttl
        self._nonces: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def generate() -> str:
        """Return a 32-character hex nonce."""
        return secrets.token_hex(16)

    def issue(self, request_id: str, nonce: Optional[str] = None) -> str:
        """
        Issue (or register) the nonce bound to a correlation id.

        Args:
            request_id: Correlation id the nonce authorizes
            nonce: Explicit nonce value; generated when omitted

        Returns:
            The nonce string
        """
        nonce = nonce or self.generate()
        with self._lock:
            self._nonces[request_id] = (nonce, time.monotonic() + self.ttl)
        return nonce

    def consume(self, request_id: str, nonce: str) -> bool:
        """
        Validate and consume the nonce for a correlation id.

        The stored entry is removed whether or not the presented nonce
        matches, so a nonce can never be exchanged twice.

        Returns:
            True if the nonce matched and had not expired
        """
        with self._lock:
            stored = self._nonces.pop(request_id, None)

        if stored is None:
            logger.debug("No nonce outstanding", request_id=request_id)
            return False

        expected, expires_at = stored
        if time.monotonic() > expires_at:
            logger.warning("Expired nonce presented", request_id=request_id)
            return False

        return secrets.compare_digest(expected.encode(), nonce.encode())

    def discard(self, request_id: str) -> None:
        """Drop the nonce for a correlation id, if any."""
        with self._lock:
            self._nonces.pop(request_id, None)

    def cleanup_expired(self) -> int:
        """Remove expired nonces. Returns how many were removed."""
        now = time.monotonic()
        with self._lock:
            expired = [rid for rid, (_, exp) in self._nonces.items() if now > exp]
            for rid in expired:
                del self._nonces[rid]
        if expired:
            logger.debug("Expired nonces removed", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._nonces
