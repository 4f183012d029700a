"""Tests for the plugin registry and the Plugin base class."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from chat_gateway.tools.base import Plugin, PluginParameter
from chat_gateway.tools.registry import PluginRegistry, _smart_truncate
from chat_gateway.types import PluginResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class EchoPlugin(Plugin):
    name = "Echo"
    description = "Echoes the input message."
    parameters = [
        PluginParameter(name="message", type="string", description="Message to echo"),
        PluginParameter(
            name="tone", type="string", description="How to say it",
            required=False, enum=["calm", "loud"],
        ),
    ]

    async def execute(self, **kwargs: Any) -> PluginResult:
        return PluginResult.ok(f"Echo: {kwargs.get('message', '')}")


class FailPlugin(Plugin):
    name = "fail"
    description = "Always raises."

    async def execute(self, **kwargs: Any) -> PluginResult:
        raise RuntimeError("intentional failure")


class BigOutputPlugin(Plugin):
    name = "big_output"
    description = "Produces a lot of output."
    max_output = 100

    async def execute(self, **kwargs: Any) -> PluginResult:
        return PluginResult.ok("x" * 500)


class SlowPlugin(Plugin):
    name = "slow"
    description = "Never finishes in time."

    async def execute(self, **kwargs: Any) -> PluginResult:
        await asyncio.sleep(10)
        return PluginResult.ok("late")


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestSmartTruncate:
    def test_short_text_untouched(self):
        assert _smart_truncate("hello", 100) == "hello"
        assert _smart_truncate("x" * 100, 100) == "x" * 100

    def test_keeps_head_and_tail(self):
        result = _smart_truncate("A" * 100 + "B" * 100, 100)
        assert result.startswith("A" * 25)
        assert result.endswith("B" * 75)
        assert "[100 chars truncated]" in result


class TestPluginDefinition:
    def test_json_schema(self):
        definition = EchoPlugin().definition()
        assert definition.name == "Echo"
        props = definition.parameters["properties"]
        assert props["message"] == {"type": "string", "description": "Message to echo"}
        assert props["tone"]["enum"] == ["calm", "loud"]
        assert definition.parameters["required"] == ["message"]

    def test_no_parameters(self):
        assert FailPlugin().definition().parameters == {"type": "object", "properties": {}}

    def test_default_parameters_not_shared_mutable_state(self):
        assert Plugin.parameters == ()
        with pytest.raises(AttributeError):
            FailPlugin.parameters.append(
                PluginParameter(name="x", type="string", description="leak"),
            )
        assert SlowPlugin().definition().parameters["properties"] == {}


class TestPluginRegistry:
    def test_lookup_is_case_insensitive(self):
        reg = PluginRegistry()
        plugin = EchoPlugin()
        reg.register(plugin)
        assert reg.get("echo") is plugin
        assert reg.get("ECHO") is plugin
        assert reg.get("missing") is None
        assert reg.names() == ["Echo"]
        assert [d.name for d in reg.definitions()] == ["Echo"]

    @pytest.mark.asyncio
    async def test_execute_success(self):
        reg = PluginRegistry()
        reg.register(EchoPlugin())
        result = await reg.execute("echo", '{"message": "hello"}')
        assert result.success
        assert result.output == "Echo: hello"

    @pytest.mark.asyncio
    async def test_unknown_plugin(self):
        result = await PluginRegistry().execute("unknown", "{}")
        assert not result.success
        assert result.error == "Plugin 'unknown' not found."

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        reg = PluginRegistry()
        reg.register(EchoPlugin())
        result = await reg.execute("echo", '{"message": ')
        assert result.error == "Invalid arguments provided for tool 'echo'."

    @pytest.mark.asyncio
    async def test_non_object_arguments(self):
        reg = PluginRegistry()
        reg.register(EchoPlugin())
        result = await reg.execute("echo", "[1, 2]")
        assert not result.success

    @pytest.mark.asyncio
    async def test_empty_arguments_mean_no_kwargs(self):
        reg = PluginRegistry()
        reg.register(EchoPlugin())
        result = await reg.execute("echo", "  ")
        assert result.output == "Echo: "

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self):
        reg = PluginRegistry()
        reg.register(FailPlugin())
        result = await reg.execute("fail", "{}")
        assert not result.success
        assert "intentional failure" in result.error
        assert result.to_message().startswith("Error: ")

    @pytest.mark.asyncio
    async def test_output_truncated(self):
        reg = PluginRegistry()
        reg.register(BigOutputPlugin())
        result = await reg.execute("big_output", "{}")
        assert result.success
        assert "truncated" in result.output
        assert len(result.output) < 500

    @pytest.mark.asyncio
    async def test_timeout(self):
        reg = PluginRegistry(timeout=0.01)
        reg.register(SlowPlugin())
        result = await reg.execute("slow", "{}")
        assert result.error == "Plugin 'slow' timed out."


class TestDiscover:
    def test_entry_points_loaded(self):
        good = MagicMock()
        good.name = "echo"
        good.load.return_value = EchoPlugin
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("missing dependency")

        reg = PluginRegistry()
        with patch("chat_gateway.tools.registry.entry_points", return_value=[good, broken]):
            reg.discover()

        assert reg.names() == ["Echo"]
