"""Tests for StreamSession: one request lifecycle, abort, error capture."""

import asyncio

import pytest

from polychat.client import ChatAPIError
from polychat.core.providers import default_model
from polychat.schemas.chat import ChatRequest, ChatTurn
from polychat.services.sse_decoders import StreamSinks
from polychat.services.stream_session import StreamSession

KEYS = {"claude": "sk-ant-test", "gemini": "AIzaSyTest", "groq": "gsk_test"}


def _request(provider: str, **kwargs) -> ChatRequest:
    return ChatRequest(
        messages=[ChatTurn(role="user", content="hi")],
        model=default_model(provider),
        provider=provider,
        api_key=KEYS[provider],
        **kwargs,
    )


def test_start_streams_to_completion(chat_server) -> None:
    chat_server.stream_text("groq", "Hel", "lo")
    texts = []

    async def scenario():
        async with chat_server.client() as client:
            session = StreamSession(client, StreamSinks(on_text=texts.append))
            result = await session.start(_request("groq"))
            return session, result

    session, result = asyncio.run(scenario())

    assert result.text == "Hello"
    assert result.aborted is None
    assert session.text == "Hello"
    assert not session.is_streaming
    assert texts == ["Hel", "Hello"]


def test_request_body_sent_to_chat_endpoint(chat_server) -> None:
    chat_server.stream_text("claude", "ok")

    async def scenario():
        async with chat_server.client() as client:
            await StreamSession(client).start(
                _request("claude", web_search_enabled=True, fallback_api_keys={"groq": "gsk_other"})
            )

    asyncio.run(scenario())

    assert chat_server.requests == [
        {
            "messages": [{"role": "user", "content": "hi"}],
            "model": "claude-sonnet-4-20250514",
            "provider": "claude",
            "webSearchEnabled": True,
            "apiKey": "sk-ant-test",
        }
    ]


def test_error_reply_sets_error_and_raises(chat_server) -> None:
    chat_server.error("gemini", 429, "gemini_error_429", "Quota exceeded")

    async def scenario():
        async with chat_server.client() as client:
            session = StreamSession(client)
            with pytest.raises(ChatAPIError) as exc_info:
                await session.start(_request("gemini"))
            return session, exc_info.value

    session, exc = asyncio.run(scenario())

    assert exc.status_code == 429
    assert exc.is_rate_limit
    assert session.error is not None
    assert session.error.type == "gemini_error_429"
    assert session.error.message == "Quota exceeded"
    assert not session.is_streaming


def test_abort_returns_partial_result(chat_server) -> None:
    chat_server.block_after("groq", "Hel")

    async def scenario():
        got_text = asyncio.Event()
        async with chat_server.client() as client:
            session = StreamSession(client, StreamSinks(on_text=lambda _: got_text.set()))
            task = asyncio.ensure_future(session.start(_request("groq")))
            await got_text.wait()
            assert session.is_streaming
            session.abort()
            return session, await task

    session, result = asyncio.run(scenario())

    assert result.aborted is True
    assert result.text == "Hel"
    assert session.error is None
    assert not session.is_streaming


def test_abort_before_any_bytes_gives_empty_result(chat_server) -> None:
    chat_server.block_after("gemini")

    async def scenario():
        async with chat_server.client() as client:
            session = StreamSession(client)
            task = asyncio.ensure_future(session.start(_request("gemini")))
            while not chat_server.requests and not task.done():
                await asyncio.sleep(0)
            session.abort()
            return await task

    result = asyncio.run(scenario())

    assert result.aborted is True
    assert result.text == ""
    assert result.search_queries == []
    assert result.citations == []


def test_outside_cancellation_propagates(chat_server) -> None:
    chat_server.block_after("groq", "x")

    async def scenario():
        got_text = asyncio.Event()
        async with chat_server.client() as client:
            session = StreamSession(client, StreamSinks(on_text=lambda _: got_text.set()))
            task = asyncio.ensure_future(session.start(_request("groq")))
            await got_text.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

    asyncio.run(scenario())


def test_reset_clears_state(chat_server) -> None:
    chat_server.stream_text("groq", "done")

    async def scenario():
        async with chat_server.client() as client:
            session = StreamSession(client)
            await session.start(_request("groq"))
            session.reset()
            return session

    session = asyncio.run(scenario())

    assert session.text == ""
    assert session.search_queries == []
    assert session.citations == []
    assert session.error is None
