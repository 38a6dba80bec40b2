"""Tests for model capability predicates."""

from __future__ import annotations

import pytest

from toolrelay.llm.capabilities import (
    is_official_model,
    model_family,
    normalize_provider,
    supports_reasoning,
    supports_tool_use,
    supports_vision,
)


class TestFamilies:
    @pytest.mark.parametrize("model", ["gpt-4o", "o3-mini", "o1", "chatgpt-4o-latest", "ft:gpt-4o:acme"])
    def test_openai_models(self, model):
        assert is_official_model("openai", model)

    @pytest.mark.parametrize("model", ["deepseek-r1", "glm-4", "doubao-pro-32k", "llama3", "o1x"])
    def test_non_openai_models(self, model):
        assert not is_official_model("openai", model)

    def test_model_family(self):
        assert model_family("DeepSeek-V3") == "deepseek"
        assert model_family("glm-4-plus") == "zhipu"
        assert model_family("doubao-seed-1-6") == "volc"
        assert model_family("llama3") is None

    def test_normalize_provider(self):
        assert normalize_provider(" Gemini ") == "google"
        assert normalize_provider("OpenAI") == "openai"


class TestReasoning:
    @pytest.mark.parametrize(
        "model",
        ["deepseek-r1", "deepseek-reasoner", "o3-mini", "claude-sonnet-4-5", "gemini-2.5-pro", "qwq-32b"],
    )
    def test_reasoning_models(self, model):
        assert supports_reasoning("openai", model)

    @pytest.mark.parametrize("model", ["gpt-4o", "deepseek-chat", "claude-3-5-sonnet", "gpt-5-chat-latest", ""])
    def test_plain_models(self, model):
        assert not supports_reasoning("openai", model)


class TestVision:
    def test_openai(self):
        assert supports_vision("openai", "gpt-4o-mini")
        assert not supports_vision("openai", "o1-mini")
        assert not supports_vision("openai", "gpt-3.5-turbo")

    def test_openai_gateway_serving_other_vendors(self):
        assert supports_vision("openai", "qwen2.5-vl-72b")

    def test_anthropic(self):
        assert supports_vision("anthropic", "claude-3-5-sonnet")
        assert not supports_vision("anthropic", "claude-2.1")

    def test_google(self):
        assert supports_vision("gemini", "gemini-2.0-flash")

    def test_compatible_vendors(self):
        assert supports_vision("zhipu", "glm-4v-plus")
        assert not supports_vision("zhipu", "glm-4")
        assert supports_vision("deepseek", "deepseek-vl-7b-chat")
        assert not supports_vision("deepseek", "deepseek-chat")


class TestToolUse:
    def test_chat_models(self):
        assert supports_tool_use("openai", "gpt-4o")

    @pytest.mark.parametrize("model", ["text-embedding-3-small", "dall-e-3", "tts-1", "whisper-1", ""])
    def test_non_chat_models(self, model):
        assert not supports_tool_use("openai", model)
