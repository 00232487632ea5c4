"""Interpreter session behind the code-execution tools.

The executor runs code in a persistent namespace; the lifecycle controller
handles restart and shutdown requests without touching the process itself.
"""

from interpreter.executor import ExecutionError, ExecutionOutput, PythonExecutor
from interpreter.lifecycle import LifecycleController, SessionLifecycle

__all__ = [
    "ExecutionError",
    "ExecutionOutput",
    "PythonExecutor",
    "LifecycleController",
    "SessionLifecycle",
]
