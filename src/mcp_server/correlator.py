"""Request/response correlation for editor round-trips.

A tool that triggers an editor command registers a pending wait under a
fresh correlation id, hands the id to the editor, and suspends until the
editor posts its reply to the relay endpoint or the deadline passes.

Each wait owns a one-shot asyncio future. The shared map is guarded by a
lock held only for insert/pop, never while waiting.
"""

import asyncio
import json
import secrets
import threading
import time
from typing import Any, Optional

from shared.errors import CorrelationTimeout
from shared.logging import get_logger
from shared.models import CorrelatedReply

logger = get_logger(__name__)


class PendingWait:
    """A registered wait for one correlation id."""

    __slots__ = ("request_id", "created_at", "deadline", "timeout", "future", "loop")

    def __init__(
        self,
        request_id: str,
        timeout: float,
        future: "asyncio.Future[CorrelatedReply]",
        loop: asyncio.AbstractEventLoop
    ) -> None:
        self.request_id = request_id
        self.timeout = timeout
        self.created_at = time.monotonic()
        self.deadline = self.created_at + timeout
        self.future = future
        self.loop = loop

    @property
    def resolved(self) -> bool:
        return self.future.done()

    def __repr__(self) -> str:
        return f"PendingWait(request_id={self.request_id!r}, timeout={self.timeout})"


def _describe_error(error: Any) -> Optional[str]:
    if error is None or isinstance(error, str):
        return error
    try:
        return json.dumps(error, default=str)
    except (TypeError, ValueError):
        return str(error)


def _resolve(future: "asyncio.Future[CorrelatedReply]", reply: CorrelatedReply) -> None:
    # The waiter may have timed out between the pop and this callback
    if not future.done():
        future.set_result(reply)


class Correlator:
    """
    Maps correlation ids to pending waits.

    Responsibilities:
    - Allocate unguessable correlation ids
    - Suspend callers until a reply or the deadline
    - Deliver relay replies to exactly one waiter
    - Drop deliveries for ids that are unknown, resolved, or expired
    """

    def __init__(self, default_timeout: float = 5.0) -> None:
        self.default_timeout = default_timeout
        self._pending: dict[str, PendingWait] = {}
        self._lock = threading.Lock()

    @staticmethod
    def new_request_id() -> str:
        """Return a 128-bit random correlation id as hex text."""
        return secrets.token_hex(16)

    def begin_wait(self, timeout: Optional[float] = None) -> tuple[str, PendingWait]:
        """
        Register a new pending wait.

        Must be called from a running event loop; the returned wait is
        resolved on that loop.

        Args:
            timeout: Seconds to wait for a reply (default_timeout if None)

        Returns:
            Tuple of (correlation id, pending wait handle)
        """
        if timeout is None:
            timeout = self.default_timeout
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        loop = asyncio.get_running_loop()

        with self._lock:
            request_id = self.new_request_id()
            while request_id in self._pending:
                request_id = self.new_request_id()
            pending = PendingWait(request_id, timeout, loop.create_future(), loop)
            self._pending[request_id] = pending

        logger.debug("Correlated wait registered", request_id=request_id, timeout=timeout)
        return request_id, pending

    async def wait(self, pending: PendingWait) -> CorrelatedReply:
        """
        Suspend until the wait is resolved or its deadline passes.

        The wait is always deregistered on return, so a late delivery is
        ignored.

        Raises:
            CorrelationTimeout: If no reply arrived before the deadline
        """
        remaining = max(0.0, pending.deadline - time.monotonic())
        try:
            return await asyncio.wait_for(pending.future, timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out waiting for correlated reply",
                request_id=pending.request_id,
                timeout=pending.timeout
            )
            raise CorrelationTimeout(pending.request_id, pending.timeout) from None
        finally:
            self._deregister(pending)

    def deliver(
        self,
        request_id: str,
        result: Any = None,
        error: Any = None
    ) -> bool:
        """
        Deliver a reply for a correlation id.

        Only the first delivery while the wait is pending has any effect;
        anything else is logged and dropped.

        Returns:
            True if a waiter was resolved
        """
        with self._lock:
            pending = self._pending.pop(request_id, None)

        if pending is None or pending.resolved:
            logger.warning("Discarding reply for unknown or expired request", request_id=request_id)
            return False

        reply = CorrelatedReply(result=result, error=_describe_error(error))

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is pending.loop:
            _resolve(pending.future, reply)
        else:
            try:
                pending.loop.call_soon_threadsafe(_resolve, pending.future, reply)
            except RuntimeError:
                logger.warning("Event loop closed before delivery", request_id=request_id)
                return False

        logger.debug("Correlated reply delivered", request_id=request_id, ok=reply.ok)
        return True

    def cancel(self, request_id: str) -> bool:
        """Cancel a pending wait. Returns True if one was registered."""
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.loop.call_soon_threadsafe(pending.future.cancel)
        return True

    def cancel_all(self) -> int:
        """Cancel every pending wait (used at shutdown)."""
        with self._lock:
            pending_waits = list(self._pending.values())
            self._pending.clear()
        for pending in pending_waits:
            if not pending.loop.is_closed():
                pending.loop.call_soon_threadsafe(pending.future.cancel)
        return len(pending_waits)

    def _deregister(self, pending: PendingWait) -> None:
        with self._lock:
            if self._pending.get(pending.request_id) is pending:
                del self._pending[pending.request_id]

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._pending
