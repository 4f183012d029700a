"""Plugin base class and the tool-executor interface used by the stream processor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from chat_gateway.types import PluginDefinition, PluginResult


@dataclass
class PluginParameter:
    """Definition of a plugin argument."""

    name: str
    type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    enum: list[str] | None = None


class Plugin(ABC):
    """Base class for in-process plugins.

    Subclasses set ``name``, ``description`` and ``parameters`` as class
    attributes and implement the async ``execute()`` method.
    """

    name: str
    description: str
    parameters: Sequence[PluginParameter] = ()
    max_output: int = 20000  # chars; 0 disables truncation

    @abstractmethod
    async def execute(self, **kwargs: Any) -> PluginResult:
        """Run the plugin with decoded arguments."""

    def definition(self) -> PluginDefinition:
        """Describe this plugin as a name plus JSON schema."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            prop: dict[str, Any] = {"type": p.type, "description": p.description}
            if p.enum:
                prop["enum"] = p.enum
            properties[p.name] = prop
            if p.required:
                required.append(p.name)
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return PluginDefinition(self.name, self.description, schema)


class ToolExecutor(Protocol):
    """What the stream processor needs from a tool backend."""

    def definitions(self) -> list[PluginDefinition]:
        ...

    async def execute(self, name: str, arguments: str) -> PluginResult:
        """Run tool *name* with raw JSON *arguments*.  Must not raise."""
        ...
