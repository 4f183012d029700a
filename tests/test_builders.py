"""Tests for the per-provider payload builders."""

from __future__ import annotations

import pytest

from chat_gateway.builders import BuilderRegistry, resolve_provider_type
from chat_gateway.builders.anthropic import AnthropicPayloadBuilder
from chat_gateway.builders.base import merge_consecutive, sampling_parameters
from chat_gateway.builders.compat import (
    DeepSeekPayloadBuilder,
    GrokPayloadBuilder,
    QwenPayloadBuilder,
)
from chat_gateway.builders.gemini import GeminiPayloadBuilder
from chat_gateway.builders.images import AimlFluxPayloadBuilder, ImagenPayloadBuilder
from chat_gateway.builders.openai import OpenAiPayloadBuilder
from chat_gateway.config import ProviderSpec
from chat_gateway.errors import ProviderRequestError, UnsupportedProviderError
from chat_gateway.types import (
    Attachment,
    ChatMessage,
    GenerationOptions,
    ModelParameters,
    PluginDefinition,
    PluginResult,
    ProviderType,
    Role,
    ToolCall,
)

TOOLS = [
    PluginDefinition(
        "web_search",
        "Search the web",
        {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
    ),
]
IMAGE = Attachment("cat.png", "image/png", "aGVsbG8=")
PDF = Attachment("doc.pdf", "application/pdf", "cGRm")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

class TestSamplingParameters:
    def test_clamping(self, make_context, make_model):
        ctx = make_context(
            model=make_model(max_output_tokens=1000),
            parameters=ModelParameters(temperature=5.0, top_p=1.5, top_k=0, max_tokens=99999),
        )
        params = sampling_parameters(ctx, {"temperature", "top_p", "top_k", "max_tokens"})
        assert params == {"temperature": 2.0, "top_p": 1.0, "top_k": 1, "max_tokens": 1000}

    def test_unsupported_dropped_and_renamed(self, make_context):
        ctx = make_context(parameters=ModelParameters(temperature=0.3, top_k=40, max_tokens=10))
        params = sampling_parameters(
            ctx, {"temperature", "maxTokens"}, rename={"max_tokens": "maxTokens"},
        )
        assert params == {"temperature": 0.3, "maxTokens": 10}

    def test_max_tokens_defaults_to_model_limit(self, make_context, make_model):
        ctx = make_context(model=make_model(max_output_tokens=2048))
        assert sampling_parameters(ctx, {"max_tokens"}) == {"max_tokens": 2048}


class TestMergeConsecutive:
    def test_merges_same_role(self):
        merged = merge_consecutive([
            ChatMessage.user("a"), ChatMessage.user("b"), ChatMessage.assistant("c"),
        ])
        assert [m.content for m in merged] == ["a\n\nb", "c"]

    def test_tool_call_messages_not_merged(self):
        call = ToolCall("c1", "web_search", "{}")
        merged = merge_consecutive([
            ChatMessage.assistant("x"), ChatMessage.assistant("", (call,)),
        ])
        assert len(merged) == 2


class TestRegistry:
    def test_all_provider_types_registered(self):
        registry = BuilderRegistry.default()
        for provider in ProviderType:
            spec = ProviderSpec(type=provider.value)
            assert registry.create(spec).provider is provider

    def test_empty_registry_rejects(self):
        registry = BuilderRegistry()
        assert not registry.supports(ProviderType.GROK)
        with pytest.raises(UnsupportedProviderError):
            registry.create(ProviderSpec(type="grok"))

    def test_unknown_type(self):
        with pytest.raises(UnsupportedProviderError):
            BuilderRegistry.default().create(ProviderSpec(type="mystery"))

    def test_resolve_is_case_insensitive(self):
        assert resolve_provider_type(" Anthropic ") is ProviderType.ANTHROPIC

    def test_empty_registry_rejects_known_type(self):
        with pytest.raises(UnsupportedProviderError):
            BuilderRegistry().create(ProviderSpec(type="openai"))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TestOpenAiBuilder:
    def _build(self, ctx, tools=None):
        return OpenAiPayloadBuilder("https://api.openai.com/v1").build(ctx, tools)

    def test_basic_payload(self, make_context):
        ctx = make_context(
            ChatMessage.user("Hi"),
            system_instructions="Be brief.",
            parameters=ModelParameters(temperature=0.5, max_tokens=100),
        )
        payload = self._build(ctx)
        assert payload.url == "https://api.openai.com/v1/responses"
        assert payload.body["instructions"] == "Be brief."
        assert payload.body["input"] == [
            {"role": "user", "content": [{"type": "input_text", "text": "Hi"}]},
        ]
        assert payload.body["temperature"] == 0.5
        assert payload.body["max_output_tokens"] == 100
        assert payload.stream is True

    def test_thinking_replaces_sampling(self, make_context, make_model):
        ctx = make_context(
            model=make_model(thinking=True),
            parameters=ModelParameters(temperature=0.5),
            enable_thinking=True,
        )
        body = self._build(ctx).body
        assert body["reasoning"] == {"effort": "medium", "summary": "detailed"}
        assert "temperature" not in body

    def test_tools_only_when_supported(self, make_context, make_model):
        assert "tools" not in self._build(make_context(), TOOLS).body
        body = self._build(make_context(model=make_model(tools=True)), TOOLS).body
        assert body["tools"][0]["name"] == "web_search"
        assert body["tools"][0]["type"] == "function"
        assert body["tool_choice"] == "auto"

    def test_attachments(self, make_context, make_model):
        ctx = make_context(
            ChatMessage.user("look", (IMAGE, PDF)), model=make_model(vision=True),
        )
        parts = self._build(ctx).body["input"][0]["content"]
        assert parts[1] == {"type": "input_image", "image_url": "data:image/png;base64,aGVsbG8="}
        assert parts[2]["type"] == "input_file"
        assert parts[2]["filename"] == "doc.pdf"

    def test_tool_round_items(self, make_context):
        call = ToolCall("call_1", "web_search", '{"query": "x"}')
        ctx = make_context(
            ChatMessage.user("search"),
            ChatMessage.assistant("", (call,)),
            ChatMessage.tool(call, PluginResult.ok("found")),
        )
        items = self._build(ctx).body["input"]
        assert items[1] == {
            "type": "function_call", "call_id": "call_1",
            "name": "web_search", "arguments": '{"query": "x"}',
        }
        assert items[2] == {"type": "function_call_output", "call_id": "call_1", "output": "found"}

    def test_credentials(self, make_context):
        payload = self._build(make_context()).with_credentials("k1", "sk-abc")
        assert payload.headers["Authorization"] == "Bearer sk-abc"
        assert payload.key_id == "k1"

    def test_empty_history_rejected(self, make_context):
        ctx = make_context(ChatMessage(Role.SYSTEM, "only system"))
        with pytest.raises(ProviderRequestError):
            self._build(ctx)


class TestAnthropicBuilder:
    def _build(self, ctx, tools=None):
        return AnthropicPayloadBuilder("https://api.anthropic.com/v1").build(ctx, tools)

    def test_headers_and_defaults(self, make_context):
        payload = self._build(make_context()).with_credentials("k", "sk-ant")
        assert payload.url == "https://api.anthropic.com/v1/messages"
        assert payload.headers["x-api-key"] == "sk-ant"
        assert payload.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in payload.headers
        assert payload.body["max_tokens"] == 4096

    def test_roles_merged_and_start_with_user(self, make_context):
        ctx = make_context(
            ChatMessage.assistant("Welcome"),
            ChatMessage.user("a"),
            ChatMessage.user("b"),
        )
        messages = self._build(ctx).body["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[2]["content"] == [{"type": "text", "text": "a\n\nb"}]

    def test_temperature_clamped(self, make_context):
        ctx = make_context(parameters=ModelParameters(temperature=1.7))
        assert self._build(ctx).body["temperature"] == 1.0

    def test_thinking(self, make_context, make_model):
        ctx = make_context(
            model=make_model(thinking=True),
            parameters=ModelParameters(temperature=0.2, top_k=5, top_p=0.9, max_tokens=512),
            enable_thinking=True,
        )
        body = self._build(ctx).body
        assert body["thinking"] == {"type": "enabled", "budget_tokens": 1024}
        assert body["temperature"] == 1
        assert "top_k" not in body and "top_p" not in body
        assert body["max_tokens"] > 1024

    def test_thinking_ignored_without_capability(self, make_context):
        body = self._build(make_context(enable_thinking=True)).body
        assert "thinking" not in body

    def test_prompt_caching(self, make_context, make_model):
        ctx = make_context(model=make_model(caching=True), system_instructions="rules")
        system = self._build(ctx).body["system"]
        assert system == [{"type": "text", "text": "rules", "cache_control": {"type": "ephemeral"}}]

    def test_vision_blocks_and_placeholders(self, make_context, make_model):
        msg = ChatMessage.user("see", (IMAGE, PDF))
        with_vision = self._build(make_context(msg, model=make_model(vision=True))).body
        blocks = with_vision["messages"][0]["content"]
        assert [b["type"] for b in blocks] == ["image", "document", "text"]

        without = self._build(make_context(msg)).body
        text = without["messages"][0]["content"][0]["text"]
        assert "[Image: cat.png]" in text and "[File: doc.pdf]" in text

    def test_tool_use_and_result(self, make_context, make_model):
        call = ToolCall("toolu_1", "web_search", '{"query": "x"}')
        ctx = make_context(
            ChatMessage.user("search"),
            ChatMessage.assistant("Searching", (call,)),
            ChatMessage.tool(call, PluginResult.failure("boom")),
            model=make_model(tools=True),
        )
        body = self._build(ctx, TOOLS).body
        assistant = body["messages"][1]["content"]
        assert assistant[1] == {
            "type": "tool_use", "id": "toolu_1", "name": "web_search", "input": {"query": "x"},
        }
        assert body["messages"][2]["content"] == [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "Error: boom"},
        ]
        assert body["tools"][0]["input_schema"]["required"] == ["query"]
        assert body["tool_choice"] == {"type": "auto"}


class TestGeminiBuilder:
    def _build(self, ctx, tools=None):
        return GeminiPayloadBuilder("https://generativelanguage.googleapis.com/v1beta").build(ctx, tools)

    def test_url_and_auth(self, make_context):
        payload = self._build(make_context()).with_credentials("k", "g-key")
        assert payload.url.endswith("/models/test-model:streamGenerateContent?alt=sse")
        assert payload.headers == {"x-goog-api-key": "g-key"}

    def test_roles_and_system(self, make_context):
        ctx = make_context(
            ChatMessage.user("q"), ChatMessage.assistant("a"), system_instructions="sys",
        )
        body = self._build(ctx).body
        assert [c["role"] for c in body["contents"]] == ["user", "model"]
        assert body["systemInstruction"] == {"parts": [{"text": "sys"}]}

    def test_generation_config_renamed(self, make_context, make_model):
        ctx = make_context(
            model=make_model(thinking=True),
            parameters=ModelParameters(top_p=0.5, top_k=3, max_tokens=64, stop_sequences=("END",)),
            enable_thinking=True,
        )
        config = self._build(ctx).body["generationConfig"]
        assert config["topP"] == 0.5
        assert config["topK"] == 3
        assert config["maxOutputTokens"] == 64
        assert config["stopSequences"] == ["END"]
        assert config["thinkingConfig"] == {"thinkingBudget": -1, "includeThoughts": True}

    def test_safety_settings(self, make_context):
        ctx = make_context(parameters=ModelParameters(
            safety_settings={"HARM_CATEGORY_HATE_SPEECH": "BLOCK_LOW_AND_ABOVE"},
        ))
        settings = {s["category"]: s["threshold"] for s in self._build(ctx).body["safetySettings"]}
        assert len(settings) == 4
        assert settings["HARM_CATEGORY_HATE_SPEECH"] == "BLOCK_LOW_AND_ABOVE"
        assert settings["HARM_CATEGORY_HARASSMENT"] == "BLOCK_NONE"

    def test_function_call_round(self, make_context, make_model):
        call = ToolCall("c1", "web_search", '{"query": "x"}')
        ctx = make_context(
            ChatMessage.user("q"),
            ChatMessage.assistant("", (call,)),
            ChatMessage.tool(call, PluginResult.ok("res")),
            model=make_model(tools=True),
        )
        body = self._build(ctx, TOOLS).body
        assert body["contents"][1]["parts"] == [{"functionCall": {"name": "web_search", "args": {"query": "x"}}}]
        assert body["contents"][2]["parts"] == [
            {"functionResponse": {"name": "web_search", "response": {"content": "res"}}},
        ]
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "web_search"

    def test_inline_images(self, make_context, make_model):
        ctx = make_context(ChatMessage.user("see", (IMAGE,)), model=make_model(vision=True))
        parts = self._build(ctx).body["contents"][0]["parts"]
        assert parts[1] == {"inline_data": {"mime_type": "image/png", "data": "aGVsbG8="}}


class TestCompatBuilders:
    def test_deepseek_reasoner_proceed_turn(self, make_context, make_model):
        ctx = make_context(
            ChatMessage.user("q"), ChatMessage.assistant("a"),
            model=make_model("deepseek-reasoner"),
            system_instructions="sys",
        )
        body = DeepSeekPayloadBuilder("https://api.deepseek.com/v1").build(ctx).body
        assert body["messages"][0] == {"role": "system", "content": "sys"}
        assert body["messages"][-1] == {"role": "user", "content": "Proceed."}
        assert body["stream_options"] == {"include_usage": True}

    def test_deepseek_placeholders(self, make_context, make_model):
        ctx = make_context(ChatMessage.user("see", (IMAGE,)), model=make_model("deepseek-chat", vision=True))
        body = DeepSeekPayloadBuilder("https://api.deepseek.com/v1").build(ctx).body
        assert body["messages"][0]["content"] == "see\n[Image: cat.png]"

    def test_grok_reasoning_effort(self, make_context, make_model):
        ctx = make_context(model=make_model("grok-4", thinking=True), enable_thinking=True)
        payload = GrokPayloadBuilder("https://api.x.ai/v1").build(ctx)
        assert payload.url == "https://api.x.ai/v1/chat/completions"
        assert payload.body["reasoning_effort"] == "high"
        assert payload.body["temperature"] == 0.0

    def test_qwen_thinking_temperature(self, make_context, make_model):
        ctx = make_context(
            model=make_model("qwen3", thinking=True),
            parameters=ModelParameters(temperature=0.1),
            enable_thinking=True,
        )
        body = QwenPayloadBuilder("https://dashscope").build(ctx).body
        assert body["enable_thinking"] is True
        assert body["temperature"] == 0.7
        assert body["stream_options"] == {"include_usage": True}

    def test_qwen_vision_image_url(self, make_context, make_model):
        ctx = make_context(ChatMessage.user("see", (IMAGE,)), model=make_model("qwen-vl", vision=True))
        content = QwenPayloadBuilder("https://dashscope").build(ctx).body["messages"][0]["content"]
        assert content[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGVsbG8="}}

    def test_tool_messages(self, make_context, make_model):
        call = ToolCall("c1", "web_search", '{"query": "x"}')
        ctx = make_context(
            ChatMessage.user("q"),
            ChatMessage.assistant("", (call,)),
            ChatMessage.tool(call, PluginResult.ok("res")),
            model=make_model("grok-4", tools=True),
        )
        body = GrokPayloadBuilder("https://api.x.ai/v1").build(ctx, TOOLS).body
        assert body["messages"][1]["tool_calls"][0]["function"]["name"] == "web_search"
        assert body["messages"][2] == {"role": "tool", "tool_call_id": "c1", "content": "res"}
        assert body["tools"][0]["function"]["parameters"]["required"] == ["query"]


class TestImageBuilders:
    def test_flux_defaults(self, make_context):
        ctx = make_context(ChatMessage.user("  a red fox  "))
        payload = AimlFluxPayloadBuilder("https://api.aimlapi.com/v1").build(ctx)
        assert payload.stream is False
        assert payload.framing == "json"
        assert payload.body["prompt"] == "a red fox"
        assert payload.body["image_size"] == "landscape_16_9"
        assert payload.body["output_format"] == "jpeg"
        assert payload.body["num_images"] == 1

    def test_flux_options(self, make_context):
        ctx = make_context(generation=GenerationOptions(image_size="square", output_format="png", num_images=2))
        body = AimlFluxPayloadBuilder("https://api.aimlapi.com/v1").build(ctx).body
        assert (body["image_size"], body["output_format"], body["num_images"]) == ("square", "png", 2)

    def test_missing_prompt(self, make_context):
        ctx = make_context(ChatMessage.user("   "))
        with pytest.raises(ProviderRequestError):
            AimlFluxPayloadBuilder("https://api.aimlapi.com/v1").build(ctx)

    def test_imagen(self, make_context):
        ctx = make_context(ChatMessage.user("a lighthouse"), generation=GenerationOptions(image_size="portrait_16_9"))
        payload = ImagenPayloadBuilder("https://generativelanguage.googleapis.com/v1beta").build(ctx)
        assert payload.url.endswith("/models/test-model:predict")
        assert payload.body["instances"] == [{"prompt": "a lighthouse"}]
        assert payload.body["parameters"]["aspectRatio"] == "9:16"
        assert payload.body["parameters"]["sampleCount"] == 1
