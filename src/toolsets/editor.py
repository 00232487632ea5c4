"""Editor toolset: trigger editor commands and await their replies."""

import json
from typing import Any

from shared.errors import CorrelationTimeout, EditorError
from shared.logging import get_logger
from mcp_server.context import ToolContext
from toolsets.base import BaseToolset

logger = get_logger(__name__)

EXTENSION_HINT = "Make sure the editor remote control extension is installed and running."


def _format_result(command: str, result: Any) -> str:
    if result is None:
        return f"Editor command '{command}' executed successfully (no return value)"
    try:
        text = json.dumps(result, indent=2, default=str)
    except (TypeError, ValueError):
        text = str(result)
    return f"Editor command '{command}' result:\n{text}"


async def execute_editor_command(arguments: dict[str, Any], context: ToolContext) -> str:
    command = arguments.get("command", "")
    if not command:
        return "Error: command parameter is required"

    command_args = arguments.get("args") or None
    if not arguments.get("wait_for_response", False):
        uri = context.editor.build_uri(command, command_args, port=context.port)
        try:
            await context.editor.trigger(uri)
        except EditorError as e:
            return f"Error executing editor command: {e}. {EXTENSION_HINT}"
        return f"Editor command '{command}' executed successfully."

    timeout = float(arguments.get("timeout", context.settings.editor.response_timeout))
    request_id, pending = context.correlator.begin_wait(timeout)
    nonce = context.nonces.issue(request_id)
    uri = context.editor.build_uri(
        command, command_args, request_id=request_id, nonce=nonce, port=context.port
    )

    try:
        try:
            await context.editor.trigger(uri)
        except EditorError as e:
            context.correlator.cancel(request_id)
            return f"Error executing editor command: {e}. {EXTENSION_HINT}"

        logger.info("Waiting for editor response", command=command, request_id=request_id)
        try:
            reply = await context.correlator.wait(pending)
        except CorrelationTimeout as e:
            return f"Error waiting for editor response: {e}"
    finally:
        # Unused nonces must not outlive the wait
        context.nonces.discard(request_id)

    if not reply.ok:
        return f"Editor command '{command}' failed: {reply.error}"
    return _format_result(command, reply.result)


def list_editor_commands(arguments: dict[str, Any], context: ToolContext) -> str:
    try:
        commands = context.editor.allowed_commands()
    except EditorError as e:
        return f"Error reading editor settings: {e}"

    if not commands:
        return "No editor commands configured. Add them to the remote control extension's allowedCommands setting."

    result = f"Allowed editor commands ({len(commands)})\n\n"
    for command in commands:
        result += f"  - {command}\n"
    return result


class EditorToolset(BaseToolset):
    """Tools that drive the editor through its remote control extension."""

    name = "editor"

    def _define_tools(self) -> None:
        self._add(
            "execute_editor_command",
            (
                "Execute an editor command via the remote control extension.\n\n"
                "The command must be in the extension's allowed commands list "
                "(see list_editor_commands).\n\n"
                "Set wait_for_response=true to wait for and return the command's result; "
                "the default timeout is 5 seconds.\n\n"
                "Examples:\n"
                "  execute_editor_command(\"workbench.action.files.saveAll\")\n"
                "  execute_editor_command(\"workbench.action.tasks.runTask\", [\"test\"])\n"
                "  execute_editor_command(\"someCommand\", wait_for_response=true, timeout=10.0)"
            ),
            execute_editor_command,
            input_schema={
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The editor command id (e.g., 'workbench.action.files.saveAll')"
                    },
                    "args": {
                        "type": "array",
                        "description": "Optional arguments passed to the command (JSON-encoded)"
                    },
                    "wait_for_response": {
                        "type": "boolean",
                        "description": "Wait for the command result (default: false)",
                        "default": False
                    },
                    "timeout": {
                        "type": "number",
                        "exclusiveMinimum": 0,
                        "description": "Seconds to wait when wait_for_response=true (default: 5.0)",
                        "default": 5.0
                    }
                },
                "required": ["command"]
            },
        )

        self._add(
            "list_editor_commands",
            "List all editor commands the remote control extension is allowed to execute.",
            list_editor_commands,
        )
