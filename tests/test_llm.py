# =============================================================================
# Unit Tests: LLM Providers
# =============================================================================
#
# Message shaping per provider and decoding parameters, with the SDK
# clients replaced by mocks. Retry behaviour is checked against a real
# AsyncOpenAI client talking to an httpx.MockTransport.
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from ledger_qa.config import Settings
from ledger_qa.errors import UpstreamServiceError
from ledger_qa.services.llm import (
    AnthropicProvider,
    OpenAICompatibleProvider,
    get_llm_provider,
    split_system,
)

MESSAGES = [
    {"role": "user", "content": "earlier question"},
    {"role": "assistant", "content": "earlier answer"},
    {"role": "system", "content": "POLICY"},
    {"role": "system", "content": "CONTEXT"},
    {"role": "user", "content": "What is our cash balance?"},
]


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _openai_client(content: str = " 15900 ") -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        model="gpt-4o-mini",
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=8),
    ))
    return client


_CHAT_COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 0,
    "model": "m",
    "choices": [{
        "index": 0,
        "message": {"role": "assistant", "content": "15900"},
        "finish_reason": "stop",
    }],
    "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
}


def _anthropic_client() -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=SimpleNamespace(
        content=[SimpleNamespace(type="text", text="15900")],
        model="claude-sonnet-4-6",
        usage=SimpleNamespace(input_tokens=100, output_tokens=4),
    ))
    return client


class TestOpenAICompatibleProvider:
    def test_messages_sent_verbatim(self):
        client = _openai_client()
        provider = OpenAICompatibleProvider(client, model="gpt-4o-mini")
        response = _run(provider.complete(MESSAGES))

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"] == MESSAGES
        assert kwargs["model"] == "gpt-4o-mini"
        assert response.content == "15900"
        assert response.input_tokens == 120
        assert response.output_tokens == 8

    def test_zero_temperature_is_honoured(self):
        client = _openai_client()
        provider = OpenAICompatibleProvider(
            client, model="m", temperature=0.7, max_tokens=700,
        )
        _run(provider.complete(MESSAGES, temperature=0.0, max_tokens=50))
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 50

    def test_defaults_applied(self):
        client = _openai_client()
        provider = OpenAICompatibleProvider(client, model="m")
        _run(provider.complete(MESSAGES))
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 700

    def test_api_failure_is_upstream_error(self):
        client = MagicMock()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client.chat.completions.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=request),
        )
        provider = OpenAICompatibleProvider(client, model="m")
        with pytest.raises(UpstreamServiceError, match="chat model"):
            _run(provider.complete(MESSAGES))
        assert client.chat.completions.create.await_count == 1

    def test_sdk_retries_then_answers(self):
        responses = iter([
            httpx.Response(
                503, headers={"retry-after-ms": "1"}, json={"error": {"message": "busy"}},
            ),
            httpx.Response(200, json=_CHAT_COMPLETION),
        ])
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return next(responses)

        client = openai.AsyncOpenAI(
            api_key="k",
            base_url="http://llm.test/v1",
            max_retries=1,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        provider = OpenAICompatibleProvider(client, model="m")
        response = _run(provider.complete(MESSAGES))

        assert response.content == "15900"
        assert seen == ["/v1/chat/completions"] * 2

    def test_sdk_gives_up_with_upstream_error(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                503, headers={"retry-after-ms": "1"}, json={"error": {"message": "busy"}},
            )

        client = openai.AsyncOpenAI(
            api_key="k",
            base_url="http://llm.test/v1",
            max_retries=2,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        provider = OpenAICompatibleProvider(client, model="m")
        with pytest.raises(UpstreamServiceError, match="chat model"):
            _run(provider.complete(MESSAGES))
        assert len(calls) == 3


class TestAnthropicProvider:
    def test_system_messages_lifted(self):
        client = _anthropic_client()
        provider = AnthropicProvider(client, model="claude-sonnet-4-6")
        response = _run(provider.complete(MESSAGES))

        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "POLICY\n\nCONTEXT"
        assert [m["role"] for m in kwargs["messages"]] == ["user", "assistant", "user"]
        assert kwargs["temperature"] == 0.0
        assert response.content == "15900"

    def test_no_system_kwarg_without_system_messages(self):
        client = _anthropic_client()
        provider = AnthropicProvider(client, model="m")
        _run(provider.complete([{"role": "user", "content": "hi"}]))
        assert "system" not in client.messages.create.await_args.kwargs

    def test_api_failure_is_upstream_error(self):
        import anthropic

        client = MagicMock()
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client.messages.create = AsyncMock(
            side_effect=anthropic.APIConnectionError(request=request),
        )
        provider = AnthropicProvider(client, model="m")
        with pytest.raises(UpstreamServiceError, match="chat model"):
            _run(provider.complete(MESSAGES))
        assert client.messages.create.await_count == 1


class TestSplitSystem:
    def test_order_preserved(self):
        system, turns = split_system(MESSAGES)
        assert system == "POLICY\n\nCONTEXT"
        assert turns[-1]["content"] == "What is our cash balance?"


class TestFactory:
    def test_openai_compatible_default(self):
        config = Settings(llm_api_key="k", _env_file=None)
        assert isinstance(get_llm_provider(config), OpenAICompatibleProvider)

    def test_anthropic(self):
        config = Settings(llm_provider="anthropic", llm_api_key="k", _env_file=None)
        assert isinstance(get_llm_provider(config), AnthropicProvider)

    def test_sdk_clients_carry_retry_and_deadline(self):
        config = Settings(
            llm_api_key="k", retry_attempts=4, llm_timeout_seconds=12.0, _env_file=None,
        )
        client = get_llm_provider(config)._client
        assert client.max_retries == 3
        assert client.timeout == 12.0

        config = Settings(
            llm_provider="anthropic", llm_api_key="k", retry_attempts=1, _env_file=None,
        )
        client = get_llm_provider(config)._client
        assert client.max_retries == 0
        assert client.timeout == 60.0

    def test_missing_key(self):
        config = Settings(llm_api_key=None, openai_api_key="", _env_file=None)
        with pytest.raises(ValueError):
            get_llm_provider(config)
