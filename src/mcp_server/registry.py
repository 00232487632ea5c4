"""Tool Registry for the MCP server.

Built once at startup from a fixed list of tool definitions and read-only
afterwards, so it can be shared across concurrent requests without locking.
"""

from types import MappingProxyType
from typing import Any, Iterable, Iterator, Optional

from shared.errors import RegistryError
from shared.logging import get_logger
from shared.models import ToolDefinition
from shared.schema import validate_schema

logger = get_logger(__name__)


class ToolRegistry:
    """
    Immutable registry of tools.

    Responsibilities:
    - Map external names to stable internal ids
    - Map ids to tool definitions
    - Produce the `tools/list` listing
    - Validate tool arguments against their schemas
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        by_id: dict[str, ToolDefinition] = {}
        name_to_id: dict[str, str] = {}

        for tool in tools:
            if tool.id in by_id:
                raise RegistryError(f"Tool id '{tool.id}' is already registered")
            if tool.name in name_to_id:
                raise RegistryError(
                    f"Tool name '{tool.name}' is already registered "
                    f"(by tool id '{name_to_id[tool.name]}')"
                )
            by_id[tool.id] = tool
            name_to_id[tool.name] = tool.id

        self._tools = MappingProxyType(by_id)
        self._name_to_id = MappingProxyType(name_to_id)

        logger.info("Tool registry built", tool_count=len(by_id))

    def resolve(self, name: str) -> Optional[str]:
        """Return the internal id for an external name, if registered."""
        return self._name_to_id.get(name)

    def get(self, name: str) -> Optional[ToolDefinition]:
        """
        Get a tool by its external name.

        Args:
            name: External tool name as used in `tools/call`

        Returns:
            ToolDefinition if found, None otherwise
        """
        tool_id = self._name_to_id.get(name)
        if tool_id is None:
            return None
        return self._tools.get(tool_id)

    def get_by_id(self, tool_id: str) -> Optional[ToolDefinition]:
        """Get a tool by its internal id."""
        return self._tools.get(tool_id)

    def list_tools(self, toolset: Optional[str] = None) -> list[ToolDefinition]:
        """List all tools in registration order, optionally for one toolset."""
        tools = list(self._tools.values())
        if toolset:
            tools = [t for t in tools if t.toolset == toolset]
        return tools

    def listing(self) -> list[dict[str, Any]]:
        """Tool triples in the shape returned by `tools/list`."""
        return [tool.listing() for tool in self._tools.values()]

    def list_toolsets(self) -> list[str]:
        """List all toolsets with at least one registered tool."""
        return sorted({t.toolset for t in self._tools.values()})

    def validate_arguments(
        self,
        name: str,
        arguments: dict[str, Any]
    ) -> tuple[bool, list[str]]:
        """
        Validate arguments against a tool's input schema.

        Args:
            name: External tool name
            arguments: Arguments supplied with `tools/call`

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        tool = self.get(name)
        if not tool:
            return False, [f"Tool '{name}' not found"]

        return validate_schema(arguments, tool.input_schema)

    @property
    def names(self) -> list[str]:
        return list(self._name_to_id)

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._name_to_id
