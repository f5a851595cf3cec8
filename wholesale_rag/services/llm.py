# =============================================================================
# Multi-Provider LLM Abstraction — Completion + Streaming
# =============================================================================
#
# Common interface for LLM calls, with concrete implementations for
# Anthropic (Claude) and OpenAI-compatible APIs.
#
# Two tiers are built from the same provider class:
#   - fast tier (settings.llm_fast_model): classification, reformulation
#   - generation tier (settings.llm_model): the cited answer
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching the
# VectorStore protocol in vectorstore.py. Tests pass any object with
# `complete()` / `stream()`.
#
# STREAMING:
# `stream()` is an async generator yielding LLMStreamEvent: zero or more
# text fragments, then one terminal event (done=True) carrying usage and
# finish reason. The provider stream is opened with `async with`, so
# closing the generator (client disconnect, task cancellation) closes the
# underlying HTTP stream.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — system prompt as first message
#   └── create_llm_provider()    — builds a provider for one model tier
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

from wholesale_rag.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.
    """

    content: str           # The generated text
    model: str             # Model identifier
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


@dataclass
class LLMStreamEvent:
    """One item of a streamed completion."""

    text: str = ""
    done: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str | None = None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system" — use the system param).
            system: System prompt for the LLM.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[LLMStreamEvent]:
        """Stream a completion as text fragments plus a terminal event."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            from anthropic import AsyncAnthropic

            if not api_key:
                raise ValueError(
                    "No Anthropic API key configured. Set LLM_API_KEY or "
                    "ANTHROPIC_API_KEY in .env"
                )
            client = AsyncAnthropic(api_key=api_key, timeout=timeout)

        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        response = await self._client.messages.create(
            **self._kwargs(messages, system, temperature, max_tokens)
        )

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

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[LLMStreamEvent]:
        """Stream a completion using Claude's messages.stream helper."""
        kwargs = self._kwargs(messages, system, temperature, max_tokens)
        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if text:
                    yield LLMStreamEvent(text=text)
            final = await stream.get_final_message()

        yield LLMStreamEvent(
            done=True,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
            finish_reason=final.stop_reason,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            from openai import AsyncOpenAI

            if not api_key:
                raise ValueError(
                    "No API key configured for OpenAI-compatible provider. "
                    "Set LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": api_key, "timeout": timeout}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)

        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            base_url or "https://api.openai.com/v1",
        )

    def _kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        response = await self._client.chat.completions.create(
            **self._kwargs(messages, system, temperature, max_tokens)
        )

        content = response.choices[0].message.content or ""
        usage = response.usage

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[LLMStreamEvent]:
        """Stream a completion; usage arrives in the final chunk."""
        response = await self._client.chat.completions.create(
            **self._kwargs(messages, system, temperature, max_tokens),
            stream=True,
            stream_options={"include_usage": True},
        )

        input_tokens = output_tokens = 0
        finish_reason: str | None = None
        async with response:
            async for chunk in response:
                if chunk.usage:
                    input_tokens = chunk.usage.prompt_tokens
                    output_tokens = chunk.usage.completion_tokens
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                if choice.delta and choice.delta.content:
                    yield LLMStreamEvent(text=choice.delta.content)

        yield LLMStreamEvent(
            done=True,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            finish_reason=finish_reason,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_llm_provider(
    cfg: Settings,
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build a provider for one model tier from settings.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    Args:
        cfg: Application settings.
        model: Model override (e.g. cfg.llm_fast_model for the fast tier).
        temperature: Default temperature for this tier.
        max_tokens: Default max output tokens for this tier.
    """
    resolved_model = model or cfg.llm_model
    resolved_temperature = cfg.llm_temperature if temperature is None else temperature
    resolved_max_tokens = max_tokens or cfg.llm_max_tokens

    if cfg.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(
            api_key=cfg.llm_api_key or cfg.openai_api_key,
            model=resolved_model,
            base_url=cfg.llm_base_url,
            temperature=resolved_temperature,
            max_tokens=resolved_max_tokens,
            timeout=cfg.llm_timeout,
        )
    if cfg.llm_provider != "anthropic":
        raise ValueError(
            f"Unknown llm_provider '{cfg.llm_provider}'. "
            "Supported: 'anthropic', 'openai_compatible'"
        )
    return AnthropicProvider(
        api_key=cfg.llm_api_key or cfg.anthropic_api_key,
        model=resolved_model,
        temperature=resolved_temperature,
        max_tokens=resolved_max_tokens,
        timeout=cfg.llm_timeout,
    )
