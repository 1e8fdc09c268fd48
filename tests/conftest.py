import asyncio
import json

import httpx
import pytest

from polychat.client import AsyncAPIClient

TEST_KEYS = {
    "claude": "sk-ant-test",
    "gemini": "AIzaSyTest",
    "groq": "gsk_test",
}


def native_text_frames(provider: str, *texts: str) -> bytes:
    """Encode ``texts`` as the provider's own streamed text events."""
    frames = []
    for text in texts:
        if provider == "claude":
            event = {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}
        elif provider == "gemini":
            event = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
        else:
            event = {"choices": [{"index": 0, "delta": {"content": text}}]}
        frames.append(f"data: {json.dumps(event)}\n\n")
    if provider == "groq":
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


class BlockingStream(httpx.AsyncByteStream):
    """Yields its chunks, then never finishes."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        await asyncio.Event().wait()


class FakeChatServer:
    """Stands in for POST /api/chat; replies are scripted per provider."""

    def __init__(self) -> None:
        self.replies: dict[str, tuple] = {}
        self.requests: list[dict] = []

    def stream_text(self, provider: str, *texts: str) -> None:
        self.replies[provider] = ("stream", native_text_frames(provider, *texts))

    def block_after(self, provider: str, *texts: str) -> None:
        self.replies[provider] = ("block", native_text_frames(provider, *texts) if texts else b"")

    def error(self, provider: str, status: int, error_type: str, message: str = "failed") -> None:
        body = json.dumps({"type": error_type, "message": message}).encode("utf-8")
        self.replies[provider] = ("error", status, body)

    @property
    def providers_called(self) -> list[str]:
        return [payload["provider"] for payload in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        reply = self.replies.get(payload["provider"])
        if reply is None:
            return httpx.Response(500, content=b"no reply scripted")

        headers = {"content-type": "text/event-stream"}
        if reply[0] == "stream":
            return httpx.Response(200, content=reply[1], headers=headers)
        if reply[0] == "block":
            return httpx.Response(200, stream=BlockingStream([reply[1]] if reply[1] else []), headers=headers)
        return httpx.Response(reply[1], content=reply[2], headers={"content-type": "application/json"})

    def client(self) -> AsyncAPIClient:
        return AsyncAPIClient(base_url="http://testserver", transport=httpx.MockTransport(self.handler))


@pytest.fixture
def chat_server() -> FakeChatServer:
    return FakeChatServer()
