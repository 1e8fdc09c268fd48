"""One network-request lifecycle against /api/chat for a single provider."""

from __future__ import annotations

import asyncio
from typing import Optional

from polychat.client import APIError, AsyncAPIClient
from polychat.core.logger import get_logger
from polychat.schemas.chat import ChatRequest, Citation, ErrorBody, SearchQuery, StreamResult
from polychat.services.sse_decoders import StreamSinks, get_decoder

logger = get_logger("polychat.stream_session")

CHAT_PATH = "/api/chat"


class _CancelToken:
    """Owns the task of one attempt; ``aborted`` tells an abort apart from outside cancellation."""

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task
        self.aborted = False

    def cancel(self) -> None:
        if not self.task.done():
            self.aborted = True
            self.task.cancel()


class StreamSession:
    """
    Issues one streaming chat request at a time and accumulates its decoded events.

    ``text``, ``search_queries`` and ``citations`` always reflect what the live
    (or last) attempt has decoded so far; ``observers`` receive the same updates
    as they happen.
    """

    def __init__(
        self,
        client: AsyncAPIClient,
        observers: Optional[StreamSinks] = None,
        path: str = CHAT_PATH,
    ) -> None:
        self.client = client
        self.observers = observers or StreamSinks()
        self.path = path
        self.text = ""
        self.search_queries: list[SearchQuery] = []
        self.citations: list[Citation] = []
        self.error: Optional[ErrorBody] = None
        self._token: Optional[_CancelToken] = None

    @property
    def is_streaming(self) -> bool:
        return self._token is not None and not self._token.task.done()

    def reset(self) -> None:
        self.text = ""
        self.search_queries = []
        self.citations = []
        self.error = None

    def clear_error(self) -> None:
        self.error = None

    def abort(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    async def start(self, request: ChatRequest) -> StreamResult:
        """
        Stream one request to completion.

        Returns:
            StreamResult; ``aborted`` is True when ``abort()`` (or a newer
            ``start``) cut the stream short, with whatever had been decoded.

        Raises:
            ChatAPIError: non-2xx reply, carrying the structured error body
            NetworkError / TimeoutError: transport failures
        """
        self.abort()
        self.reset()

        token = _CancelToken(asyncio.ensure_future(self._run(request)))
        self._token = token
        try:
            return await token.task
        except asyncio.CancelledError:
            if not token.aborted:
                raise
            logger.info("Stream to %s aborted after %d chars", request.provider, len(self.text))
            return StreamResult(
                text=self.text,
                search_queries=list(self.search_queries),
                citations=list(self.citations),
                aborted=True,
            )
        except APIError as exc:
            self.error = exc.error
            raise
        finally:
            if self._token is token:
                self._token = None

    async def _run(self, request: ChatRequest) -> StreamResult:
        decoder = get_decoder(
            request.provider,
            StreamSinks(
                on_text=self._on_text,
                on_search_query=self._on_search_query,
                on_citation=self._on_citation,
            ),
        )

        async with self.client.stream("POST", self.path, json=request.to_wire()) as response:
            async for chunk in response.aiter_bytes():
                decoder.feed(chunk)

        decoded = decoder.close()
        logger.debug(
            "Stream from %s finished: %d chars, %d queries, %d citations",
            request.provider,
            len(decoded.text),
            len(decoded.search_queries),
            len(decoded.citations),
        )
        return StreamResult(
            text=decoded.text,
            search_queries=decoded.search_queries,
            citations=decoded.citations,
        )

    def _on_text(self, text: str) -> None:
        self.text = text
        if self.observers.on_text:
            self.observers.on_text(text)

    def _on_search_query(self, query: SearchQuery) -> None:
        self.search_queries.append(query)
        if self.observers.on_search_query:
            self.observers.on_search_query(query)

    def _on_citation(self, citation: Citation) -> None:
        self.citations.append(citation)
        if self.observers.on_citation:
            self.observers.on_citation(citation)
