# =============================================================================
# Multi-Provider LLM Abstraction: Pluggable Chat Backend
# =============================================================================
#
# Provides a common interface for chat completions, with concrete
# implementations for OpenAI-compatible APIs (OpenAI, DeepSeek, Qwen, ...)
# and Anthropic (Claude).
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching the
# DocumentStore and HistoryStore patterns. Tests pass any object with a
# matching `complete()`.
#
# DESIGN DECISION: Role-tagged messages in, text out. The orchestrator
# builds one ordered list: history, policy (system), context (system),
# question (user). Each provider maps that list to its own API:
#   - OpenAI-compatible: sent verbatim, system messages stay in place
#   - Anthropic: system messages are lifted, in order, into the top-level
#     `system=` argument; user/assistant turns remain as messages
#
# DESIGN DECISION: Deterministic decoding. Temperature 0.0 is a real value,
# so overrides are checked with `is not None`; `temperature or default`
# would silently replace 0.0 with the default.
#
# DESIGN DECISION: The SDKs own retries and deadlines (max_retries =
# RETRY_ATTEMPTS - 1, timeout = LLM_TIMEOUT_SECONDS). Whatever they finally
# raise is mapped to UpstreamServiceError("chat model", ...).
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── OpenAICompatibleProvider - chat.completions.create()
#   ├── AnthropicProvider        - messages.create(system=...)
#   └── get_llm_provider()       - factory, reads from config
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from ledger_qa.errors import UpstreamServiceError
from ledger_qa.services.retry import describe_error

if TYPE_CHECKING:
    from ledger_qa.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """One chat completion, in the same shape whichever SDK produced it."""

    content: str           # answer text, whitespace-stripped
    model: str             # model id the API reports
    input_tokens: int      # prompt tokens billed
    output_tokens: int     # completion tokens billed


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Ordered dicts with "role" (system, user, assistant)
                and "content".
            temperature: Sampling temperature; None uses the provider default.
                0.0 is sent as 0.0.
            max_tokens: Completion cap; None uses the provider default.

        Raises:
            UpstreamServiceError: The API call failed once the SDK stopped
                retrying.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions format.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        client: Any,
        *,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 700,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, config: Settings) -> OpenAICompatibleProvider:
        from openai import AsyncOpenAI

        resolved_key = config.llm_api_key or config.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )

        client_kwargs = _client_kwargs(config, resolved_key)
        if config.llm_base_url:
            client_kwargs["base_url"] = config.llm_base_url

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            config.llm_model,
            config.llm_base_url or "https://api.openai.com/v1",
        )
        return cls(AsyncOpenAI(**client_kwargs), **_decoding_kwargs(config))

    async def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        import openai

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                max_tokens=max_tokens if max_tokens is not None else self._max_tokens,
                temperature=temperature if temperature is not None else self._temperature,
            )
        except openai.APIError as e:
            raise UpstreamServiceError("chat model", describe_error(e)) from e

        if not response.choices:
            raise UpstreamServiceError("chat model", "response contained no choices")
        content = response.choices[0].message.content or ""

        usage = response.usage
        return LLMResponse(
            content=content.strip(),
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Implementation 2: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Claude via the Messages API.

    The Messages API has no "system" role: policy and context go in the
    top-level `system=` kwarg. System messages are joined there, in order,
    separated by a blank line.
    """

    def __init__(
        self,
        client: Any,
        *,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 700,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, config: Settings) -> AnthropicProvider:
        from anthropic import AsyncAnthropic

        resolved_key = config.llm_api_key or config.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        logger.info("Initialized AnthropicProvider (model=%s)", config.llm_model)
        return cls(
            AsyncAnthropic(**_client_kwargs(config, resolved_key)),
            **_decoding_kwargs(config),
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        import anthropic

        system, turns = split_system(messages)
        kwargs: dict = {
            "model": self._model,
            "messages": turns,
            "max_tokens": max_tokens if max_tokens is not None else self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise UpstreamServiceError("chat model", describe_error(e)) from e

        # first text block is the answer
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content.strip(),
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


def split_system(
    messages: list[dict[str, str]],
) -> tuple[str, list[dict[str, str]]]:
    """Separate system messages (joined in order) from conversation turns."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    turns = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m["role"] != "system"
    ]
    return "\n\n".join(system_parts), turns


def _decoding_kwargs(config: Settings) -> dict[str, Any]:
    return {
        "model": config.llm_model,
        "temperature": config.llm_temperature,
        "max_tokens": config.llm_max_tokens,
    }


def _client_kwargs(config: Settings, api_key: str) -> dict[str, Any]:
    # both SDKs count max_retries after the first attempt
    return {
        "api_key": api_key,
        "max_retries": config.retry_attempts - 1,
        "timeout": config.llm_timeout_seconds,
    }


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_llm_provider(config: Settings) -> OpenAICompatibleProvider | AnthropicProvider:
    """
    Build the chat model client selected by `llm_provider`:
    - "openai_compatible" → OpenAICompatibleProvider (OpenAI, DeepSeek, ...)
    - "anthropic" → AnthropicProvider (Claude)
    """
    if config.llm_provider == "anthropic":
        return AnthropicProvider.from_settings(config)
    return OpenAICompatibleProvider.from_settings(config)
