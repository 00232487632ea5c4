"""Interpreter toolset: code execution and session lifecycle."""

import os
import platform
import sys
from typing import Any

from shared.logging import get_logger
from interpreter.executor import ExecutionError
from mcp_server.context import ToolContext
from toolsets.base import BaseToolset

logger = get_logger(__name__)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    omitted = len(text) - limit
    return text[:limit] + f"\n... [output truncated, {omitted} more characters]"


def exec_code(arguments: dict[str, Any], context: ToolContext) -> str:
    code = arguments.get("code", "")
    if not code.strip():
        return "Error: code parameter is required"

    limit = context.settings.interpreter.max_output_chars
    try:
        output = context.executor.execute(
            code,
            quiet=arguments.get("quiet", True),
            silent=arguments.get("silent", False),
        )
    except ExecutionError as e:
        text = e.printed + str(e)
        return truncate(text.rstrip("\n"), limit)

    return truncate(output.render(), limit)


def manage_repl(arguments: dict[str, Any], context: ToolContext) -> str:
    command = arguments.get("command", "")
    if command == "restart":
        return context.lifecycle.restart()
    if command == "shutdown":
        return context.lifecycle.shutdown()
    return "Error: command parameter is required (must be 'restart' or 'shutdown')"


def investigate_environment(arguments: dict[str, Any], context: ToolContext) -> str:
    lines = [
        f"Python: {platform.python_version()} ({sys.executable})",
        f"Working directory: {os.getcwd()}",
        f"Workspace: {context.settings.workspace}",
        f"Virtual environment: {os.environ.get('VIRTUAL_ENV') or 'none'}",
    ]
    names = context.executor.defined_names
    if names:
        lines.append(f"Session names ({len(names)}): {', '.join(names)}")
    else:
        lines.append("Session names: none")
    return "\n".join(lines)


class InterpreterToolset(BaseToolset):
    """Tools that run code in, and control, the interpreter session."""

    name = "interpreter"

    def _define_tools(self) -> None:
        self._add(
            "exec_code",
            (
                "Execute Python code in a persistent interpreter session.\n\n"
                "Default (quiet=true): returns only printed output and errors, suppressing "
                "the value of a trailing expression.\n"
                "Verbose (quiet=false): also returns the repr of the trailing expression; use "
                "it only when the value is needed.\n\n"
                "Call usage_instructions first for workflow guidance."
            ),
            exec_code,
            input_schema={
                "type": "object",
                "properties": {
                    "code": {
                        "type": "string",
                        "description": "Python code to execute (e.g., '2 + 3 * 4' or 'import sys; sys.path')"
                    },
                    "quiet": {
                        "type": "boolean",
                        "description": "Suppress the trailing expression value (default: true)"
                    },
                    "silent": {
                        "type": "boolean",
                        "description": "Suppress printed output as well (default: false)"
                    }
                },
                "required": ["code"]
            },
        )

        self._add(
            "manage_repl",
            (
                "Manage the interpreter session (restart or shutdown).\n\n"
                "- restart: discard all session state and start fresh\n"
                "- shutdown: stop the server; it stays stopped until started again"
            ),
            manage_repl,
            input_schema={
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "enum": ["restart", "shutdown"],
                        "description": "Command to execute: 'restart' or 'shutdown'"
                    }
                },
                "required": ["command"]
            },
        )

        self._add(
            "investigate_environment",
            "Get current environment info: Python version, working directory, workspace and session names.",
            investigate_environment,
        )
