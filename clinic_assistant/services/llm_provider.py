"""Provider-neutral LLM access on top of LangChain chat models.

``LLMConfigStore`` is the process-wide runtime setting (provider, key,
model) that the settings endpoint edits; last write wins.  Each request
takes one snapshot via :meth:`LLMConfigStore.get_config` and builds its own
:class:`LLMProvider`, so a settings change never affects a request that is
already running.

Messages use plain ``{"role": ..., "content": ...}`` dicts so the engine
does not depend on LangChain message classes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_mistralai import ChatMistralAI
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from clinic_assistant.config import LLM_MODEL, LLM_PROVIDER, optional_secret
from clinic_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)

Provider = Literal["mistral", "openai", "anthropic"]

DEFAULT_MODELS: dict[str, list[str]] = {
    "mistral": ["mistral-large-latest", "mistral-medium-latest", "mistral-small-latest"],
    "openai": ["gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo"],
    "anthropic": ["claude-sonnet-4-5", "claude-haiku-4-5"],
}

_API_KEY_ENV = {
    "mistral": "MISTRAL_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

MISTRAL_RATE_LIMIT_FALLBACK = ("mistral-large-latest", "mistral-small-latest")


class LLMProviderError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LLMConfig(BaseModel):
    provider: Provider
    api_key: str = ""
    model: str

    def public_view(self) -> dict[str, Any]:
        """Settings as shown to clients: the key itself is never returned."""
        return {"provider": self.provider, "model": self.model, "has_api_key": bool(self.api_key)}


class ChatResponse(BaseModel):
    content: str


# ── Runtime configuration ───────────────────────────────────────────


class LLMConfigStore:
    """Process-wide LLM settings with partial updates and reset.

    Unlocked: settings are global, not per session, and the last update wins.
    """

    def __init__(self, provider: str = LLM_PROVIDER, model: str | None = LLM_MODEL) -> None:
        if provider not in DEFAULT_MODELS:
            logger.warning("Unknown LLM_PROVIDER %r, falling back to mistral", provider)
            provider = "mistral"
        self._default_provider = provider
        self._default_model = model or DEFAULT_MODELS[provider][0]
        self._overrides: dict[str, str] = {}

    def get_config(self) -> LLMConfig:
        overrides = dict(self._overrides)
        provider = overrides.get("provider") or self._default_provider
        if overrides.get("model"):
            model = overrides["model"]
        elif provider == self._default_provider:
            model = self._default_model
        else:
            model = DEFAULT_MODELS[provider][0]
        api_key = overrides.get("api_key") or optional_secret(_API_KEY_ENV[provider]) or ""
        return LLMConfig(provider=provider, api_key=api_key, model=model)

    def update_config(self, **changes: str | None) -> LLMConfig:
        """Merge non-empty *changes* into the current overrides."""
        provider = changes.get("provider")
        if provider and provider not in DEFAULT_MODELS:
            raise ValueError(f"Unsupported provider: {provider}")
        for key in ("provider", "api_key", "model"):
            if changes.get(key):
                self._overrides[key] = changes[key]
        config = self.get_config()
        logger.info("LLM settings updated: provider=%s model=%s", config.provider, config.model)
        return config

    def reset_to_default(self) -> LLMConfig:
        self._overrides.clear()
        logger.info("LLM settings reset to defaults")
        return self.get_config()


# ── Provider ────────────────────────────────────────────────────────


def _build_chat_model(config: LLMConfig, *, model: str | None = None, json_mode: bool = False) -> Any:
    """Instantiate the LangChain chat model for *config*."""
    model_name = model or config.model
    llm: BaseChatModel
    if config.provider == "openai":
        llm = ChatOpenAI(model=model_name, api_key=config.api_key, temperature=0.2)
    elif config.provider == "anthropic":
        llm = ChatAnthropic(model=model_name, api_key=config.api_key, temperature=0.2, max_tokens=1024)
    else:
        llm = ChatMistralAI(model=model_name, api_key=config.api_key, temperature=0.2)

    # Anthropic has no JSON response mode; the prompt alone asks for JSON.
    if json_mode and config.provider in ("openai", "mistral"):
        return llm.bind(response_format={"type": "json_object"})
    return llm


def _to_langchain(messages: list[dict[str, str]]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for msg in messages:
        role, content = msg.get("role"), msg.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def content_text(content: Any) -> str:
    """Flatten a message/chunk ``content`` (string or list of parts) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                parts.append(str(part.get("text") or part.get("content") or ""))
        return "".join(parts)
    return str(content)


def _is_rate_limited(exc: Exception) -> bool:
    status = getattr(exc, "status_code", None) or getattr(getattr(exc, "response", None), "status_code", None)
    return status == 429 or "429" in str(exc)


class LLMProvider:
    """One request's view of the configured LLM."""

    def __init__(self, config: LLMConfig):
        self.config = config

    async def chat(self, messages: list[dict[str, str]], *, json_mode: bool = False) -> ChatResponse:
        lc_messages = _to_langchain(messages)
        llm = _build_chat_model(self.config, json_mode=json_mode)
        try:
            with metrics.track("llm", f"{self.config.provider} chat"):
                result = await llm.ainvoke(lc_messages)
        except Exception as exc:
            if self.config.provider == "mistral" and self.config.model == MISTRAL_RATE_LIMIT_FALLBACK[0] \
                    and _is_rate_limited(exc):
                logger.warning("Mistral rate limited, retrying once on %s", MISTRAL_RATE_LIMIT_FALLBACK[1])
                fallback = _build_chat_model(self.config, model=MISTRAL_RATE_LIMIT_FALLBACK[1], json_mode=json_mode)
                with metrics.track("llm", "mistral chat fallback"):
                    result = await fallback.ainvoke(lc_messages)
            else:
                raise LLMProviderError(f"{self.config.provider} chat failed: {exc}") from exc
        return ChatResponse(content=content_text(result.content))

    async def chat_stream(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """Yield response text fragments in arrival order."""
        llm = _build_chat_model(self.config)
        try:
            with metrics.track("llm", f"{self.config.provider} stream"):
                async for chunk in llm.astream(_to_langchain(messages)):
                    text = content_text(chunk.content)
                    if text:
                        yield text
        except Exception as exc:
            raise LLMProviderError(f"{self.config.provider} stream failed: {exc}") from exc


# ── Module-level singleton ──────────────────────────────────────────
llm_config_store = LLMConfigStore()
