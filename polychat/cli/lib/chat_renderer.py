"""Terminal renderer for streamed chat replies.

Live text is printed as a delta against what was already shown, so the
accumulated-text callbacks of the stream session map onto plain appends.
"""

from __future__ import annotations

from polychat.cli.lib.safe_output import emoji, safe_print
from polychat.client import AUTH_ERROR_TYPES
from polychat.core.providers import RATE_LIMIT_ERROR_TYPES
from polychat.schemas.chat import Citation, ErrorBody, FallbackInfo, SearchQuery

PROVIDER_NAMES = {
    "claude": "Claude",
    "gemini": "Gemini",
    "groq": "Groq",
}


class ChatRenderer:
    """Render one streamed turn plus the banners around it."""

    def __init__(self, max_results: int = 5) -> None:
        self.max_results = max_results
        self._shown = 0

    def begin_turn(self, provider: str, model: str) -> None:
        self._shown = 0
        safe_print(f"{emoji('🤖', '[AI]')} {PROVIDER_NAMES.get(provider, provider)} ({model}):")

    def render_text(self, accumulated: str) -> None:
        """Print the part of ``accumulated`` not yet on screen."""
        if len(accumulated) < self._shown:
            self._shown = 0
        delta = accumulated[self._shown:]
        if delta:
            safe_print(delta, end="", flush=True)
            self._shown = len(accumulated)

    def render_search_query(self, query: SearchQuery) -> None:
        safe_print(f"\n{emoji('🔍', '[SEARCH]')} {query.query}")
        for result in query.results[: self.max_results]:
            age = f" ({result.page_age})" if result.page_age else ""
            safe_print(f"  - {result.title or result.url}{age}")
            safe_print(f"    {result.url}")

    def end_turn(self, citations: list[Citation] | None = None) -> None:
        safe_print("")
        if citations:
            seen: set[str] = set()
            safe_print("\n[Sources]")
            for citation in citations:
                if citation.url in seen:
                    continue
                seen.add(citation.url)
                safe_print(f"  - {citation.title or citation.url}")
                safe_print(f"    {citation.url}")

    def render_fallback(self, info: FallbackInfo) -> None:
        source = PROVIDER_NAMES.get(info.from_provider, info.from_provider)
        target = PROVIDER_NAMES.get(info.to_provider, info.to_provider)
        safe_print(f"\n{emoji('🔀', '[FALLBACK]')} {source} -> {target} ({info.reason})")

    def render_aborted(self) -> None:
        safe_print(f"\n{emoji('⏹', '[STOPPED]')} Generation stopped; message discarded.")

    def render_error(self, error: ErrorBody) -> None:
        """Rate limits get retry guidance, auth failures a key prompt, the rest the raw message."""
        if error.type in RATE_LIMIT_ERROR_TYPES:
            safe_print(f"\n{emoji('⏳', '[RATE LIMIT]')} {error.message}")
            safe_print("  Wait a moment and retry, or add another provider key to enable fallback.")
        elif error.type in AUTH_ERROR_TYPES:
            safe_print(f"\n{emoji('🔑', '[AUTH]')} {error.message}")
            safe_print("  Set a valid key with: polychat keys set <provider> <key>")
        else:
            code = f" ({error.errorCode})" if error.errorCode else ""
            safe_print(f"\n{emoji('❌', '[ERROR]')} {error.message}{code}")
