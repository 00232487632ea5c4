"""Core toolset: health check, tool help and usage instructions."""

import platform
from pathlib import Path
from typing import Any

from shared import __version__
from shared.logging import get_logger
from mcp_server.context import ToolContext
from toolsets.base import BaseToolset

logger = get_logger(__name__)

# Used when the workspace has no instructions of its own
BUNDLED_INSTRUCTIONS = Path(__file__).parent / "prompts" / "usage_instructions.md"


def _resolve(context: ToolContext, path: str) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else context.settings.workspace / candidate


def ping(arguments: dict[str, Any], context: ToolContext) -> str:
    status = "MCP Server is healthy and responsive\n"
    status += f"Version: {__version__} (Python {platform.python_version()})\n"
    executions = context.executor.executions
    names = context.executor.defined_names
    status += f"Interpreter session: {executions} executions, {len(names)} names defined"
    return status


def tool_help(arguments: dict[str, Any], context: ToolContext) -> str:
    tool_name = arguments.get("tool_name", "")
    if not tool_name:
        return "Error: tool_name parameter is required"

    tool = context.registry.get(tool_name)
    if tool is None:
        return f"Error: Tool '{tool_name}' not found. Use tools/list to see available tools."

    result = f"Help for tool: {tool_name}\n"
    result += "=" * 70 + "\n\n"
    result += tool.description + "\n"

    if arguments.get("extended", False):
        help_file = _resolve(context, context.settings.interpreter.extended_help_dir) / f"{tool_name}.md"
        if help_file.is_file():
            result += "\n\n---\n\n## Extended Documentation\n\n"
            result += help_file.read_text()
        else:
            result += "\n\n(No extended documentation available for this tool)"

    return result


def usage_instructions(arguments: dict[str, Any], context: ToolContext) -> str:
    path = _resolve(context, context.settings.interpreter.usage_instructions_path)
    if path.is_file():
        return path.read_text()
    if BUNDLED_INSTRUCTIONS.is_file():
        return BUNDLED_INSTRUCTIONS.read_text()
    return f"Error: usage instructions not found at {path}"


class CoreToolset(BaseToolset):
    """Tools that describe the server itself."""

    name = "core"

    def _define_tools(self) -> None:
        self._add(
            "ping",
            "Check if the server is responsive and report the interpreter session status.",
            ping,
        )

        self._add(
            "tool_help",
            "Get detailed help and examples for any tool. Use extended=true for additional documentation.",
            tool_help,
            input_schema={
                "type": "object",
                "properties": {
                    "tool_name": {
                        "type": "string",
                        "description": "Name of the tool to get help for"
                    },
                    "extended": {
                        "type": "boolean",
                        "description": "Return extended documentation with additional examples (default: false)"
                    }
                },
                "required": ["tool_name"]
            },
        )

        self._add(
            "usage_instructions",
            "Get interpreter usage instructions and best practices for agents.",
            usage_instructions,
        )
