"""Toolsets exposed by the server.

Each toolset groups related tools. Which tools are exposed can be narrowed
per workspace with `.replbridge/tools.json`:

    {
      "tool_sets": {
        "editor": {"enabled": false, "tools": ["execute_editor_command"]}
      },
      "individual_overrides": {"ping": true}
    }

Without that file every tool is enabled.
"""

import json
from pathlib import Path
from typing import Iterable, Optional

from shared.logging import get_logger
from shared.models import ToolDefinition

logger = get_logger(__name__)


def load_all_toolsets() -> list[ToolDefinition]:
    """
    Collect the tool definitions of every toolset.

    This is called at server startup, before the registry is built.
    """
    from toolsets.core import CoreToolset
    from toolsets.interpreter import InterpreterToolset
    from toolsets.editor import EditorToolset

    tools: list[ToolDefinition] = []
    for toolset in (CoreToolset(), InterpreterToolset(), EditorToolset()):
        tools.extend(toolset.tools)
    return tools


def load_tools_config(path: str | Path) -> Optional[set[str]]:
    """
    Read the set of enabled tool names from a tools config file.

    Tool sets are applied first, then individual overrides. Override keys
    starting with an underscore are comments.

    Returns:
        The enabled tool names, or None when every tool should be enabled
    """
    path = Path(path)
    if not path.is_file():
        return None

    try:
        with open(path) as f:
            config = json.load(f)

        enabled: set[str] = set()
        for set_config in config.get("tool_sets", {}).values():
            if set_config.get("enabled", False):
                enabled.update(set_config.get("tools", []))

        for tool_name, is_enabled in config.get("individual_overrides", {}).items():
            if tool_name.startswith("_"):
                continue
            if is_enabled:
                enabled.add(tool_name)
            else:
                enabled.discard(tool_name)
    except (OSError, ValueError, AttributeError, TypeError) as e:
        logger.warning(
            "Error loading tools configuration, enabling all tools",
            path=str(path),
            error=str(e)
        )
        return None

    return enabled


def filter_tools(
    tools: Iterable[ToolDefinition],
    enabled: Optional[set[str]]
) -> list[ToolDefinition]:
    """Keep only the enabled tools. None enables everything."""
    tools = list(tools)
    if enabled is None:
        return tools

    kept = [t for t in tools if t.name in enabled]
    disabled = sorted(t.name for t in tools if t.name not in enabled)
    if disabled:
        logger.info("Tools disabled by configuration", disabled=disabled)
    return kept


__all__ = ["load_all_toolsets", "load_tools_config", "filter_tools"]
