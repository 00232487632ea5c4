"""Base class for toolsets.

A toolset groups related tools. It builds its ToolDefinitions once and
holds no per-call state: everything a handler needs arrives in the
ToolContext passed with each call.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from shared.models import ToolDefinition
from shared.schema import empty_schema


class BaseToolset(ABC):
    """
    Base class for toolsets.

    Subclasses set `name` and define their tools in `_define_tools`.
    """

    name: str = "core"

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._define_tools()

    @abstractmethod
    def _define_tools(self) -> None:
        """Populate `self._tools`."""

    @property
    def tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def _add(
        self,
        name: str,
        description: str,
        handler: Callable[..., Any],
        input_schema: Optional[dict[str, Any]] = None,
        tool_id: Optional[str] = None
    ) -> None:
        self._tools[name] = ToolDefinition(
            id=tool_id or f"{self.name}.{name}",
            name=name,
            description=description,
            input_schema=input_schema if input_schema is not None else empty_schema(),
            handler=handler,
            toolset=self.name,
        )
