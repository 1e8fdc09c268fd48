"""
Wire format decoders for provider event streams.

Each provider streams server-sent events in its own native shape:

- Anthropic: typed ``message_*`` / ``content_block_*`` events
- Gemini: ``candidates[0].content.parts`` plus grounding metadata
- OpenAI-compatible (Groq): ``choices[0].delta.content`` terminated by ``[DONE]``

A decoder consumes raw bytes in arbitrary chunk sizes and turns them into one
accumulated text plus append-only lists of search queries and citations,
reporting progress through ``StreamSinks`` callbacks as it goes.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, Optional

from polychat.core.logger import get_logger
from polychat.schemas.chat import Citation, SearchQuery, WebSearchResult

logger = get_logger("polychat.sse_decoders")

GEMINI_QUERY_LABEL = "Google Search"
DONE_SENTINEL = "[DONE]"


# ============================================================================
# Frame handling
# ============================================================================


def parse_sse_line(line: str) -> Optional[Any]:
    """
    Parse a single SSE line.

    Args:
        line: Raw SSE line (e.g., "data: {...}")

    Returns:
        Parsed JSON payload, or None for blank lines, non-data lines,
        the ``[DONE]`` terminator and malformed JSON.
    """
    if not line.strip():
        return None

    if not line.startswith("data:"):
        return None

    payload = line[5:].strip()
    if not payload or payload == DONE_SENTINEL:
        return None

    try:
        return json.loads(payload)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Skipping malformed SSE frame: %.80s", payload)
        return None


class SSELineBuffer:
    """Split a byte stream into lines, holding the partial trailing line across reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        rest = rest.rstrip("\r")
        return [rest] if rest else []


# ============================================================================
# Decoder contract
# ============================================================================


@dataclass
class StreamSinks:
    """Observer callbacks fed while a stream is decoded."""

    on_text: Optional[Callable[[str], None]] = None
    on_search_query: Optional[Callable[[SearchQuery], None]] = None
    on_citation: Optional[Callable[[Citation], None]] = None


@dataclass
class DecodeResult:
    text: str = ""
    search_queries: list[SearchQuery] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)


class StreamDecoder:
    """Base decoder: frame buffering and state accumulation shared by all formats."""

    provider = ""

    def __init__(self, sinks: Optional[StreamSinks] = None) -> None:
        self.sinks = sinks or StreamSinks()
        self.result = DecodeResult()
        self._lines = SSELineBuffer()
        self._pending: list[tuple[Callable[[Any], None], Any]] = []

    async def decode(self, chunks: AsyncIterable[bytes]) -> DecodeResult:
        """Consume the stream to completion and return the accumulated result."""
        async for chunk in chunks:
            self.feed(chunk)
        return self.close()

    def feed(self, chunk: bytes) -> None:
        for line in self._lines.feed(chunk):
            self._handle_line(line)

    def close(self) -> DecodeResult:
        for line in self._lines.flush():
            self._handle_line(line)
        return self.result

    def _handle_line(self, line: str) -> None:
        event = parse_sse_line(line)
        if event is None:
            return
        try:
            self.handle_event(event)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.debug("%s: skipping unexpected event shape: %s", self.provider, exc)
        # sinks run outside the shape guard
        pending, self._pending = self._pending, []
        for sink, value in pending:
            sink(value)

    def handle_event(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    # -- accumulation helpers --------------------------------------------------

    def _append_text(self, fragment: str) -> None:
        self.result.text += fragment
        if self.sinks.on_text:
            self._pending.append((self.sinks.on_text, self.result.text))

    def _emit_query(self, query: SearchQuery) -> None:
        self.result.search_queries.append(query)
        if self.sinks.on_search_query:
            self._pending.append((self.sinks.on_search_query, query))

    def _emit_citation(self, citation: Citation) -> None:
        self.result.citations.append(citation)
        if self.sinks.on_citation:
            self._pending.append((self.sinks.on_citation, citation))


# ============================================================================
# Anthropic
# ============================================================================


class _PartialJsonQuery:
    """Recover the ``query`` field from streamed tool-input JSON fragments.

    The buffer is re-parsed after every fragment; a parse failure means the
    object is not complete yet.
    """

    def __init__(self) -> None:
        self.buffer = ""

    def feed(self, fragment: str) -> Optional[str]:
        self.buffer += fragment
        try:
            parsed = json.loads(self.buffer)
        except ValueError:
            return None
        if isinstance(parsed, dict) and parsed.get("query"):
            return str(parsed["query"])
        return None


class AnthropicDecoder(StreamDecoder):
    provider = "claude"

    def __init__(self, sinks: Optional[StreamSinks] = None) -> None:
        super().__init__(sinks)
        self._current_tool_id: Optional[str] = None
        self._partial = _PartialJsonQuery()
        # tool_use_id -> recovered query, in arrival order
        self._queries: dict[str, str] = {}
        self._open_tool_ids: list[str] = []

    def handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type == "content_block_start":
            self._on_block_start(event.get("content_block") or {})
        elif event_type == "content_block_delta":
            self._on_block_delta(event.get("delta") or {})
        elif event_type == "content_block_stop":
            self._partial = _PartialJsonQuery()
        elif event_type == "error":
            logger.warning("claude: error event in stream: %s", event.get("error"))

    def _on_block_start(self, block: Dict[str, Any]) -> None:
        block_type = block.get("type")

        if block_type == "server_tool_use" and block.get("name") == "web_search":
            tool_id = str(block.get("id") or "")
            if self._open_tool_ids:
                logger.warning(
                    "claude: web_search %s started while %s still awaits results; "
                    "upstream may be interleaving tool calls",
                    tool_id,
                    self._open_tool_ids,
                )
            self._current_tool_id = tool_id
            self._open_tool_ids.append(tool_id)
            initial = block.get("input")
            if isinstance(initial, dict) and initial.get("query"):
                self._queries[tool_id] = str(initial["query"])

        elif block_type == "web_search_tool_result":
            self._on_search_result(block)

    def _on_block_delta(self, delta: Dict[str, Any]) -> None:
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            text = delta.get("text")
            if text:
                self._append_text(text)
                for citation in delta.get("citations") or []:
                    self._on_citation(citation)

        elif delta_type == "citations_delta":
            self._on_citation(delta.get("citation") or {})

        elif delta_type == "input_json_delta" and self._current_tool_id is not None:
            query = self._partial.feed(delta.get("partial_json") or "")
            if query:
                self._queries[self._current_tool_id] = query

    def _on_citation(self, raw: Dict[str, Any]) -> None:
        if raw.get("type") != "web_search_result_location":
            return
        self._emit_citation(
            Citation(
                type=raw["type"],
                url=raw.get("url") or "",
                title=raw.get("title") or "",
                cited_text=raw.get("cited_text") or "",
            )
        )

    def _on_search_result(self, block: Dict[str, Any]) -> None:
        content = block.get("content")
        results = []
        if isinstance(content, list):
            results = [
                WebSearchResult(
                    url=item.get("url") or "",
                    title=item.get("title") or "",
                    page_age=item.get("page_age"),
                )
                for item in content
                if isinstance(item, dict) and item.get("type", "web_search_result") == "web_search_result"
            ]

        tool_id = block.get("tool_use_id")
        query = self._take_query(tool_id)

        if query and results:
            self._emit_query(SearchQuery(query=query, results=results))

        if tool_id in self._open_tool_ids:
            self._open_tool_ids.remove(tool_id)
        elif self._open_tool_ids:
            self._open_tool_ids.pop()
        if tool_id is None or tool_id == self._current_tool_id:
            self._current_tool_id = None

    def _take_query(self, tool_id: Optional[str]) -> Optional[str]:
        if tool_id and tool_id in self._queries:
            return self._queries.pop(tool_id)
        if not self._queries:
            return None
        if tool_id:
            logger.warning(
                "claude: search result for unknown tool_use_id %s; pairing with latest query",
                tool_id,
            )
        latest = next(reversed(self._queries))
        return self._queries.pop(latest)


# ============================================================================
# Gemini
# ============================================================================


class GeminiDecoder(StreamDecoder):
    provider = "gemini"

    def __init__(self, sinks: Optional[StreamSinks] = None) -> None:
        super().__init__(sinks)
        self._seen_urls: set[str] = set()

    def handle_event(self, event: Dict[str, Any]) -> None:
        candidate = (event.get("candidates") or [{}])[0]

        parts = (candidate.get("content") or {}).get("parts") or []
        for part in parts:
            text = part.get("text")
            if text:
                self._append_text(text)

        grounding = candidate.get("groundingMetadata")
        if grounding:
            self._on_grounding(grounding)

    def _on_grounding(self, grounding: Dict[str, Any]) -> None:
        chunks = grounding.get("groundingChunks") or []
        supports = grounding.get("groundingSupports") or []

        new_results = []
        for chunk in chunks:
            web = chunk.get("web")
            if not web or not web.get("uri") or web["uri"] in self._seen_urls:
                continue
            self._seen_urls.add(web["uri"])
            new_results.append(WebSearchResult(url=web["uri"], title=web.get("title") or ""))

        if new_results:
            self._emit_query(SearchQuery(query=GEMINI_QUERY_LABEL, results=new_results))

        for support in supports:
            segment_text = (support.get("segment") or {}).get("text")
            indices = support.get("groundingChunkIndices")
            if not segment_text or not indices:
                continue
            for idx in indices:
                if not isinstance(idx, int) or not 0 <= idx < len(chunks):
                    continue
                web = chunks[idx].get("web")
                if web:
                    self._emit_citation(
                        Citation(
                            url=web.get("uri") or "",
                            title=web.get("title") or "",
                            cited_text=segment_text,
                        )
                    )


# ============================================================================
# OpenAI-compatible (Groq)
# ============================================================================


class OpenAICompatDecoder(StreamDecoder):
    provider = "groq"

    def handle_event(self, event: Dict[str, Any]) -> None:
        choices = event.get("choices") or []
        if not choices:
            return
        content = (choices[0].get("delta") or {}).get("content")
        if content:
            self._append_text(content)


_DECODERS: dict[str, type[StreamDecoder]] = {
    "claude": AnthropicDecoder,
    "gemini": GeminiDecoder,
    "groq": OpenAICompatDecoder,
}


def get_decoder(provider: str, sinks: Optional[StreamSinks] = None) -> StreamDecoder:
    """Return a fresh decoder for one stream of ``provider``."""
    try:
        decoder_cls = _DECODERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None
    return decoder_cls(sinks)
