# =============================================================================
# Multi-Provider LLM Abstraction — Ordered Text-Analysis Backends
# =============================================================================
#
# Every backend that can read a safety form and reply with the analysis
# JSON sits behind one async `complete()` call. Two adapters cover the
# supported vendors: the Anthropic SDK, and the OpenAI SDK pointed at
# DeepSeek, OpenAI or any other chat-completions endpoint.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Test doubles only need a `name` attribute and an async `complete()`;
# nothing has to inherit from a base class.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers.
# Using the anthropic and openai SDKs directly gives direct control over
# timeouts and retries, which matters here because a slow backend must not
# hold up the fallthrough to the next one.
#
# DESIGN DECISION: No singleton.
# build_providers() returns a fresh, ordered list from the credentials
# present. The caller constructs a ProviderOrchestrator once at startup and
# passes it into the form processor explicitly.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   │   └── complete()           — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — DeepSeek / OpenAI / compatible APIs
#   │   └── complete()           — system prompt as message role
#   └── build_providers()        — ordered list from configured credentials
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from safety_forms.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    One backend reply, reduced to its text and token usage.

    Only `content` feeds the analysis; model and token counts are informational.
    """

    content: str
    model: str
    input_tokens: int
    output_tokens: int


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining a text-analysis backend.

    `name` identifies the backend in provenance metadata and logs.
    Any exception raised by `complete()` is treated by the orchestrator as
    "this backend declined".
    """

    name: str

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Send one prompt and return the reply text.

        Args:
            messages: User/assistant turns as {"role", "content"} dicts.
                The system prompt is passed separately.
            system: System prompt. Each adapter places it where its API
                expects it.
            temperature: Per-call sampling temperature.
            max_tokens: Per-call output limit.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Backend over the Anthropic Messages API (AsyncAnthropic).

    The system prompt is a request parameter here, not a message.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        name: str = "anthropic",
        timeout: float = 60.0,
        max_retries: int = 1,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> None:
        from anthropic import AsyncAnthropic

        if not api_key:
            raise ValueError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY in .env"
            )

        self.name = name
        self._client = AsyncAnthropic(
            api_key=api_key, timeout=timeout, max_retries=max_retries,
        )
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info(
            "Initialized AnthropicProvider (name=%s, model=%s)", name, model
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """One Messages API call."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                self._temperature if temperature is None else temperature
            ),
        }

        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (DeepSeek, OpenAI, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI chat completions format.

    DeepSeek exposes an OpenAI-compatible API, so one implementation covers
    both it and OpenAI proper; only base_url and model differ.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        name: str = "openai",
        base_url: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 1,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> None:
        from openai import AsyncOpenAI

        if not api_key:
            raise ValueError(
                f"No API key configured for provider '{name}'. "
                f"Set {name.upper()}_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": api_key,
            "timeout": timeout,
            "max_retries": max_retries,
        }
        if base_url:
            client_kwargs["base_url"] = base_url

        self.name = name
        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (name=%s, model=%s, base_url=%s)",
            name,
            model,
            base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """One chat-completions call; the system prompt leads the message list."""
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        content = response.choices[0].message.content or ""

        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


KNOWN_PROVIDERS = ("deepseek", "openai", "anthropic")


def build_providers(settings: Settings) -> list[LLMProvider]:
    """
    Build the ordered backend list from the credentials present.

    Walks `settings.llm_provider_order` and instantiates each provider whose
    API key is set. Unknown names and providers without credentials are
    skipped with a log line; an empty list is valid (every analysis then
    goes straight to the rule-based fallback).
    """
    providers: list[LLMProvider] = []
    common = {
        "timeout": settings.llm_timeout_seconds,
        "max_retries": settings.llm_max_retries,
        "temperature": settings.llm_temperature,
        "max_tokens": settings.llm_max_tokens,
    }

    for name in settings.llm_provider_order:
        name = name.strip().lower()
        if name == "deepseek" and settings.deepseek_api_key:
            providers.append(
                OpenAICompatibleProvider(
                    api_key=settings.deepseek_api_key,
                    model=settings.deepseek_model,
                    name="deepseek",
                    base_url=settings.deepseek_base_url,
                    **common,
                )
            )
        elif name == "openai" and settings.openai_api_key:
            providers.append(
                OpenAICompatibleProvider(
                    api_key=settings.openai_api_key,
                    model=settings.openai_model,
                    name="openai",
                    base_url=settings.openai_base_url,
                    **common,
                )
            )
        elif name == "anthropic" and settings.anthropic_api_key:
            providers.append(
                AnthropicProvider(
                    api_key=settings.anthropic_api_key,
                    model=settings.anthropic_model,
                    name="anthropic",
                    **common,
                )
            )
        elif name not in KNOWN_PROVIDERS:
            logger.warning("Unknown analysis provider '%s' in order, skipping", name)
        else:
            logger.info("Provider '%s' has no API key configured, skipping", name)

    logger.info(
        "Analysis providers configured: %s",
        [p.name for p in providers] or "none (rule-based fallback only)",
    )
    return providers
