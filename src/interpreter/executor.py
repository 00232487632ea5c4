"""Python code execution in a persistent session namespace."""

import ast
import contextlib
import io
import threading
import traceback
from typing import Any, Optional

from pydantic import BaseModel

from shared.logging import get_logger

logger = get_logger(__name__)

SESSION_FILENAME = "<replbridge>"


class ExecutionError(Exception):
    """Code raised, or failed to compile. Carries the formatted traceback."""

    def __init__(self, message: str, printed: str = "") -> None:
        super().__init__(message)
        self.printed = printed


class ExecutionOutput(BaseModel):
    """Captured output of one execution."""
    printed: str = ""
    result: Optional[str] = None

    def render(self) -> str:
        parts = [p for p in (self.printed.rstrip("\n"), self.result) if p]
        return "\n".join(parts)


class PythonExecutor:
    """
    Runs code strings in a namespace shared across calls.

    Like the interactive prompt, a trailing expression is evaluated and its
    repr becomes the result. Executions are serialized: stdout capture is
    process-wide.
    """

    def __init__(self, namespace: Optional[dict[str, Any]] = None) -> None:
        self._initial = dict(namespace or {})
        self._namespace = self._fresh_namespace()
        self._lock = threading.Lock()
        self.executions = 0

    def _fresh_namespace(self) -> dict[str, Any]:
        namespace: dict[str, Any] = {"__name__": "__main__", "__builtins__": __builtins__}
        namespace.update(self._initial)
        return namespace

    def execute(self, code: str, quiet: bool = True, silent: bool = False) -> ExecutionOutput:
        """
        Execute code in the session.

        Args:
            code: Source to run
            quiet: Suppress the repr of a trailing expression
            silent: Suppress printed output as well

        Returns:
            Captured printed output and result

        Raises:
            ExecutionError: If the code fails to compile or raises
        """
        with self._lock:
            buffer = io.StringIO()
            try:
                tree = ast.parse(code, filename=SESSION_FILENAME, mode="exec")
            except SyntaxError as e:
                raise ExecutionError("".join(traceback.format_exception_only(type(e), e))) from e

            trailing: Optional[ast.Expression] = None
            if tree.body and isinstance(tree.body[-1], ast.Expr):
                trailing = ast.Expression(tree.body.pop().value)

            value: Any = None
            try:
                with contextlib.redirect_stdout(buffer), contextlib.redirect_stderr(buffer):
                    exec(compile(tree, SESSION_FILENAME, "exec"), self._namespace)
                    if trailing is not None:
                        value = eval(compile(trailing, SESSION_FILENAME, "eval"), self._namespace)
            except (Exception, SystemExit) as e:
                self.executions += 1
                printed = "" if silent else buffer.getvalue()
                message = "".join(traceback.format_exception(type(e), e, e.__traceback__))
                logger.debug("Execution raised", error=type(e).__name__)
                raise ExecutionError(message, printed=printed) from e

            self.executions += 1
            if value is not None:
                self._namespace["_"] = value

        return ExecutionOutput(
            printed="" if silent else buffer.getvalue(),
            result=None if quiet or silent or value is None else repr(value),
        )

    def reset(self) -> None:
        """Discard all session state."""
        with self._lock:
            self._namespace = self._fresh_namespace()
            self.executions = 0
        logger.info("Interpreter session reset")

    @property
    def defined_names(self) -> list[str]:
        return sorted(
            name for name in self._namespace
            if not name.startswith("__") and name not in self._initial
        )
