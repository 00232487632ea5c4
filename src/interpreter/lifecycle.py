"""Lifecycle control for the interpreter session.

Tools ask for a restart or a shutdown through this interface; whatever
supervises the server decides what that means. Nothing here exits the
process.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from shared.logging import get_logger
from interpreter.executor import PythonExecutor

logger = get_logger(__name__)


class LifecycleController(ABC):
    """Start/stop signals for the session, delivered to a supervisor."""

    @abstractmethod
    def restart(self) -> str:
        """Restart the session. Returns a status message for the client."""

    @abstractmethod
    def shutdown(self) -> str:
        """Stop serving. Returns a status message for the client."""


class SessionLifecycle(LifecycleController):
    """
    In-process lifecycle.

    Restart discards the interpreter namespace. Shutdown invokes the
    callback registered by whoever runs the HTTP server.
    """

    def __init__(
        self,
        executor: PythonExecutor,
        on_shutdown: Optional[Callable[[], None]] = None
    ) -> None:
        self.executor = executor
        self._on_shutdown = on_shutdown
        self.shutdown_requested = False

    def set_shutdown_callback(self, callback: Callable[[], None]) -> None:
        self._on_shutdown = callback

    def restart(self) -> str:
        self.executor.reset()
        logger.info("Session restart requested")
        return "Interpreter session restarted. All previously defined names are gone."

    def shutdown(self) -> str:
        self.shutdown_requested = True
        if self._on_shutdown is None:
            logger.warning("Shutdown requested but no supervisor is attached")
            return "Shutdown requested, but this server has no supervisor attached; it keeps running."

        logger.info("Session shutdown requested")
        self._on_shutdown()
        return (
            "Server shutdown initiated. In-flight requests complete first; "
            "the server will not restart on its own."
        )
