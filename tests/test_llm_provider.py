"""Tests for the provider-neutral LLM wrapper and its runtime settings."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from clinic_assistant.services.llm_provider import (
    DEFAULT_MODELS,
    LLMConfig,
    LLMConfigStore,
    LLMProvider,
    LLMProviderError,
    _build_chat_model,
    content_text,
)

MESSAGES = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}]


def _model(reply: str = "hello") -> MagicMock:
    model = MagicMock()
    model.ainvoke = AsyncMock(return_value=AIMessage(content=reply))
    return model


# ── Settings store ───────────────────────────────────────────────────


class TestLLMConfigStore:
    def test_defaults(self):
        config = LLMConfigStore(provider="mistral", model=None).get_config()
        assert config.provider == "mistral"
        assert config.model == DEFAULT_MODELS["mistral"][0]

    def test_unknown_default_provider_falls_back(self):
        assert LLMConfigStore(provider="cohere").get_config().provider == "mistral"

    def test_partial_update_keeps_other_fields(self):
        store = LLMConfigStore(provider="mistral", model=None)
        store.update_config(api_key="user-key")
        config = store.update_config(model="mistral-small-latest")
        assert config.api_key == "user-key"
        assert config.model == "mistral-small-latest"

    def test_switching_provider_uses_its_default_model(self):
        store = LLMConfigStore(provider="mistral", model=None)
        assert store.update_config(provider="anthropic").model == DEFAULT_MODELS["anthropic"][0]

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError):
            LLMConfigStore().update_config(provider="cohere")

    def test_reset(self):
        store = LLMConfigStore(provider="mistral", model=None)
        store.update_config(provider="openai", api_key="sk")
        config = store.reset_to_default()
        assert config.provider == "mistral"
        assert config.api_key != "sk"

    def test_public_view_hides_key(self):
        view = LLMConfig(provider="openai", api_key="sk-secret", model="gpt-4o").public_view()
        assert view == {"provider": "openai", "model": "gpt-4o", "has_api_key": True}


# ── Model construction ───────────────────────────────────────────────


class TestBuildChatModel:
    def test_anthropic_ignores_json_mode(self):
        config = LLMConfig(provider="anthropic", api_key="sk-ant-test", model="claude-haiku-4-5")
        assert isinstance(_build_chat_model(config, json_mode=True), ChatAnthropic)

    def test_openai_json_mode_binds_response_format(self):
        config = LLMConfig(provider="openai", api_key="sk-test", model="gpt-4o-mini")
        bound = _build_chat_model(config, json_mode=True)
        assert bound.kwargs["response_format"] == {"type": "json_object"}


# ── Provider ─────────────────────────────────────────────────────────


class TestLLMProvider:
    @pytest.mark.asyncio
    async def test_chat_converts_messages(self):
        model = _model("hello")
        config = LLMConfig(provider="openai", api_key="k", model="gpt-4o")
        with patch("clinic_assistant.services.llm_provider._build_chat_model", return_value=model) as build:
            response = await LLMProvider(config).chat(MESSAGES, json_mode=True)
        assert response.content == "hello"
        sent = model.ainvoke.await_args.args[0]
        assert isinstance(sent[0], SystemMessage)
        assert isinstance(sent[1], HumanMessage)
        assert build.call_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_mistral_rate_limit_retries_on_small_model(self):
        large, small = _model(), _model("from small")
        large.ainvoke.side_effect = Exception("Error response 429: rate limited")
        config = LLMConfig(provider="mistral", api_key="k", model="mistral-large-latest")
        with patch("clinic_assistant.services.llm_provider._build_chat_model", side_effect=[large, small]) as build:
            response = await LLMProvider(config).chat(MESSAGES)
        assert response.content == "from small"
        assert build.call_args_list[1].kwargs["model"] == "mistral-small-latest"

    @pytest.mark.asyncio
    async def test_other_errors_raise_provider_error(self):
        model = _model()
        model.ainvoke.side_effect = RuntimeError("boom")
        config = LLMConfig(provider="openai", api_key="k", model="gpt-4o")
        with patch("clinic_assistant.services.llm_provider._build_chat_model", return_value=model), \
                pytest.raises(LLMProviderError):
            await LLMProvider(config).chat(MESSAGES)

    @pytest.mark.asyncio
    async def test_stream_yields_non_empty_text(self):
        async def astream(_messages):
            for part in ["Hel", "", "lo"]:
                yield AIMessageChunk(content=part)

        model = MagicMock()
        model.astream = astream
        config = LLMConfig(provider="mistral", api_key="k", model="mistral-small-latest")
        with patch("clinic_assistant.services.llm_provider._build_chat_model", return_value=model):
            tokens = [t async for t in LLMProvider(config).chat_stream(MESSAGES)]
        assert tokens == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_stream_failure_raises_provider_error(self):
        async def astream(_messages):
            yield AIMessageChunk(content="partial")
            raise RuntimeError("connection reset")

        model = MagicMock()
        model.astream = astream
        config = LLMConfig(provider="mistral", api_key="k", model="mistral-small-latest")
        with patch("clinic_assistant.services.llm_provider._build_chat_model", return_value=model):
            with pytest.raises(LLMProviderError):
                async for _ in LLMProvider(config).chat_stream(MESSAGES):
                    pass


class TestContentText:
    def test_string(self):
        assert content_text("abc") == "abc"

    def test_parts(self):
        assert content_text([{"type": "text", "text": "a"}, "b"]) == "ab"

    def test_none(self):
        assert content_text(None) == ""
