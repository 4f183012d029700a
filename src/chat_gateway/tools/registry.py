"""Plugin registry: the default ``ToolExecutor`` implementation."""

from __future__ import annotations

import asyncio
import json
import logging
from importlib.metadata import entry_points

from chat_gateway.tools.base import Plugin
from chat_gateway.types import PluginDefinition, PluginResult

_logger = logging.getLogger(__name__)

_ENTRY_POINT_GROUP = "chat_gateway.plugins"


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep the head and tail of *text*, dropping the middle."""
    if len(text) <= max_length:
        return text
    head_size = max_length // 4
    tail_size = max_length - head_size
    omitted = len(text) - max_length
    return (
        text[:head_size]
        + f"\n\n... [{omitted} chars truncated] ...\n\n"
        + text[-tail_size:]
    )


class PluginRegistry:
    """Registry of plugins with async, never-raising execution.

    Parameters
    ----------
    timeout:
        Seconds a single plugin call may take (0 = unlimited).
    """

    def __init__(self, timeout: float = 150.0) -> None:
        self._plugins: dict[str, Plugin] = {}
        self._timeout = timeout

    def register(self, plugin: Plugin) -> None:
        self._plugins[plugin.name.lower()] = plugin

    def get(self, name: str) -> Plugin | None:
        """Look up a plugin by name, case-insensitively."""
        return self._plugins.get(name.lower())

    def names(self) -> list[str]:
        return [p.name for p in self._plugins.values()]

    def definitions(self) -> list[PluginDefinition]:
        return [p.definition() for p in self._plugins.values()]

    async def execute(self, name: str, arguments: str) -> PluginResult:
        """Execute plugin *name* with JSON *arguments*.

        Unknown plugins, undecodable arguments, exceptions and timeouts all
        come back as a failed :class:`PluginResult`.
        """
        plugin = self.get(name)
        if plugin is None:
            _logger.warning("No plugin definition found matching tool name: %s", name)
            return PluginResult.failure(f"Plugin '{name}' not found.")

        try:
            kwargs = json.loads(arguments.strip() or "{}")
        except json.JSONDecodeError:
            _logger.error("Failed to parse arguments for tool %s: %s", name, arguments)
            return PluginResult.failure(f"Invalid arguments provided for tool '{name}'.")
        if not isinstance(kwargs, dict):
            return PluginResult.failure(f"Could not parse arguments for tool '{name}'.")

        try:
            if self._timeout > 0:
                result = await asyncio.wait_for(plugin.execute(**kwargs), self._timeout)
            else:
                result = await plugin.execute(**kwargs)
        except asyncio.TimeoutError:
            _logger.warning("Plugin %s timed out after %.0fs", name, self._timeout)
            return PluginResult.failure(f"Plugin '{name}' timed out.")
        except Exception as e:
            _logger.exception("Plugin %s raised", name)
            return PluginResult.failure(
                f"Plugin '{name}' execution failed: {type(e).__name__}: {e}",
            )

        if result.success and plugin.max_output > 0:
            result = PluginResult.ok(_smart_truncate(result.output, plugin.max_output))
        return result

    def discover(self) -> None:
        """Load plugins from the ``chat_gateway.plugins`` entry-point group.

        Each entry point may be a Plugin subclass, a Plugin instance, or a
        factory returning one.
        """
        for ep in entry_points(group=_ENTRY_POINT_GROUP):
            try:
                obj = ep.load()
                if isinstance(obj, type) and issubclass(obj, Plugin):
                    plugin = obj()
                elif isinstance(obj, Plugin):
                    plugin = obj
                elif callable(obj):
                    plugin = obj()
                else:
                    _logger.warning(
                        "Entry point %s did not return a Plugin: %s", ep.name, type(obj),
                    )
                    continue
                self.register(plugin)
                _logger.info("Discovered plugin: %s", plugin.name)
            except Exception:
                _logger.exception("Failed to load plugin: %s", ep.name)
