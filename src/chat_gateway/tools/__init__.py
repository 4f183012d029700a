"""Plugin system: the tool executor behind model tool calls."""

from chat_gateway.tools.base import Plugin, PluginParameter, ToolExecutor
from chat_gateway.tools.registry import PluginRegistry

__all__ = ["Plugin", "PluginParameter", "PluginRegistry", "ToolExecutor"]
