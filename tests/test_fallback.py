"""Tests for rate-limit fallback across providers."""

import asyncio

import pytest

from polychat.client import ChatAPIError
from polychat.core.providers import default_model
from polychat.schemas.chat import ChatRequest, ChatTurn
from polychat.services.fallback import RATE_LIMIT_REASON, FallbackOrchestrator
from polychat.services.stream_session import StreamSession

KEYS = {"claude": "sk-ant-test", "gemini": "AIzaSyTest", "groq": "gsk_test"}


def _request(provider: str = "gemini", keys=None, allow_fallback: bool = True, **kwargs) -> ChatRequest:
    keys = KEYS if keys is None else keys
    return ChatRequest(
        messages=[ChatTurn(role="user", content="hi")],
        model=default_model(provider),
        provider=provider,
        api_key=keys.get(provider),
        fallback_api_keys=keys or None,
        allow_fallback=allow_fallback,
        **kwargs,
    )


def _run(chat_server, request: ChatRequest):
    async def scenario():
        async with chat_server.client() as client:
            fallback = FallbackOrchestrator(StreamSession(client))
            try:
                return fallback, await fallback.run(request), None
            except ChatAPIError as exc:
                return fallback, None, exc

    return asyncio.run(scenario())


def test_rate_limit_falls_back_to_next_provider(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429", "Quota exceeded")
    chat_server.stream_text("groq", "Hello", " world")

    fallback, result, error = _run(chat_server, _request("gemini"))

    assert error is None
    assert result.text == "Hello world"
    assert fallback.attempts == 2
    assert fallback.active_provider == "groq"
    assert result.fallback_info is not None
    assert result.fallback_info.occurred is True
    assert result.fallback_info.from_provider == "gemini"
    assert result.fallback_info.to_provider == "groq"
    assert result.fallback_info.reason == RATE_LIMIT_REASON
    assert result.aborted is None


def test_fallback_request_uses_target_provider_defaults(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.stream_text("groq", "ok")

    _run(chat_server, _request("gemini", web_search_enabled=True))

    retry = chat_server.requests[1]
    assert retry["provider"] == "groq"
    assert retry["model"] == "llama-3.3-70b-versatile"
    assert retry["apiKey"] == "gsk_test"
    assert retry["webSearchEnabled"] is False
    assert retry["messages"] == chat_server.requests[0]["messages"]


def test_web_search_kept_when_target_supports_it(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.stream_text("claude", "ok")

    _run(chat_server, _request("gemini", keys={"gemini": KEYS["gemini"], "claude": KEYS["claude"]}, web_search_enabled=True))

    assert chat_server.providers_called == ["gemini", "claude"]
    assert chat_server.requests[1]["webSearchEnabled"] is True


def test_every_provider_rate_limited_raises_last_error(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429", "gemini quota")
    chat_server.error("groq", 429, "rate_limit_error", "groq busy")
    chat_server.error("claude", 429, "rate_limit_error", "claude busy")

    fallback, result, error = _run(chat_server, _request("gemini"))

    assert result is None
    assert fallback.attempts == 3
    assert chat_server.providers_called == ["gemini", "groq", "claude"]
    assert error.error.message == "claude busy"
    assert error.is_rate_limit


def test_success_makes_single_attempt(chat_server) -> None:
    chat_server.stream_text("gemini", "direct")

    fallback, result, error = _run(chat_server, _request("gemini"))

    assert result.text == "direct"
    assert result.fallback_info is None
    assert fallback.attempts == 1


def test_non_rate_limit_error_propagates(chat_server) -> None:
    chat_server.error("gemini", 401, "invalid_api_key", "bad key")
    chat_server.stream_text("groq", "never")

    fallback, result, error = _run(chat_server, _request("gemini"))

    assert error is not None
    assert error.error.type == "invalid_api_key"
    assert fallback.attempts == 1
    assert chat_server.providers_called == ["gemini"]


def test_no_fallback_without_permission(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.stream_text("groq", "never")

    fallback, result, error = _run(chat_server, _request("gemini", allow_fallback=False))

    assert error is not None and error.is_rate_limit
    assert fallback.attempts == 1


def test_providers_without_keys_are_skipped(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.stream_text("claude", "from claude")

    fallback, result, error = _run(chat_server, _request("gemini", keys={"gemini": KEYS["gemini"], "claude": KEYS["claude"]}))

    assert result.text == "from claude"
    assert chat_server.providers_called == ["gemini", "claude"]
    assert result.fallback_info.to_provider == "claude"


def test_chain_tail_has_nowhere_to_go(chat_server) -> None:
    chat_server.error("claude", 429, "rate_limit_error")

    fallback, result, error = _run(chat_server, _request("claude"))

    assert error is not None
    assert fallback.attempts == 1


def test_multiple_hops_report_the_last_failed_provider(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.error("groq", 429, "rate_limit_error")
    chat_server.stream_text("claude", "third time")

    fallback, result, error = _run(chat_server, _request("gemini"))

    assert result.text == "third time"
    assert fallback.attempts == 3
    assert result.fallback_info.from_provider == "groq"
    assert result.fallback_info.to_provider == "claude"


def test_duplicate_chain_entries_are_tried_once(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.error("groq", 429, "rate_limit_error")
    chat_server.error("claude", 429, "rate_limit_error", "claude busy")

    async def scenario():
        async with chat_server.client() as client:
            fallback = FallbackOrchestrator(
                StreamSession(client), chain=("gemini", "groq", "gemini", "groq", "claude")
            )
            with pytest.raises(ChatAPIError) as exc_info:
                await fallback.run(_request("gemini"))
            return fallback, exc_info.value

    fallback, error = asyncio.run(scenario())

    assert fallback.attempts == 3
    assert chat_server.providers_called == ["gemini", "groq", "claude"]
    assert error.error.message == "claude busy"


def test_abort_during_fallback_stops_chain(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429")
    chat_server.block_after("groq", "par")

    async def scenario():
        async with chat_server.client() as client:
            fallback = FallbackOrchestrator(StreamSession(client))
            task = asyncio.ensure_future(fallback.run(_request("gemini")))
            while fallback.session.text != "par" and not task.done():
                await asyncio.sleep(0)
            fallback.abort()
            return fallback, await task

    fallback, result = asyncio.run(scenario())

    assert result.aborted is True
    assert result.fallback_info is None
    assert chat_server.providers_called == ["gemini", "groq"]


@pytest.mark.parametrize(
    ("provider", "keys", "expected"),
    [
        ("gemini", KEYS, "groq"),
        ("groq", KEYS, "claude"),
        ("claude", KEYS, None),
        ("gemini", {"gemini": "AIzaSyTest"}, None),
    ],
)
def test_next_request(provider, keys, expected) -> None:
    fallback = FallbackOrchestrator(session=None)
    nxt = fallback.next_request(_request(provider, keys=keys), attempted=(provider,))
    assert (nxt.provider if nxt else None) == expected
