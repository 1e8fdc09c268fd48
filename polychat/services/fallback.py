"""Retry a rate-limited chat request against the next provider in the fallback chain."""

from __future__ import annotations

from typing import Iterable, Optional

from polychat.client import APIError
from polychat.core.logger import get_logger
from polychat.core.providers import FALLBACK_CHAIN, default_model, supports_web_search
from polychat.schemas.chat import ChatRequest, FallbackInfo, StreamResult
from polychat.services.stream_session import StreamSession

logger = get_logger("polychat.fallback")

RATE_LIMIT_REASON = "rate limit exceeded"


class FallbackOrchestrator:
    """
    Runs a request through ``StreamSession`` and, on a rate-limit failure,
    re-issues it against the next provider of ``chain`` that has not been
    tried yet and has a credential.

    Only rate limiting triggers a fallback; every other error propagates as-is.
    """

    def __init__(self, session: StreamSession, chain: Iterable[str] = FALLBACK_CHAIN) -> None:
        self.session = session
        self.chain = tuple(chain)
        self.attempts = 0
        self.active_provider: Optional[str] = None
        self._fallback_from: Optional[str] = None
        self._aborted = False

    def abort(self) -> None:
        self._aborted = True
        self.session.abort()

    async def run(self, request: ChatRequest) -> StreamResult:
        self.attempts = 0
        self.active_provider = request.provider
        self._fallback_from = None
        self._aborted = False

        result = await self._attempt(request, attempted=())

        if not result.aborted and self.active_provider != request.provider:
            result.fallback_info = FallbackInfo(
                occurred=True,
                from_provider=self._fallback_from,
                to_provider=self.active_provider,
                reason=RATE_LIMIT_REASON,
            )
        return result

    async def _attempt(self, request: ChatRequest, attempted: tuple[str, ...]) -> StreamResult:
        if self._aborted:
            return StreamResult(aborted=True)

        self.attempts += 1
        self.active_provider = request.provider
        try:
            return await self.session.start(request)
        except APIError as exc:
            if not exc.is_rate_limit:
                raise

            attempted = attempted + (request.provider,)
            next_request = self.next_request(request, attempted)
            if next_request is None:
                logger.info("Rate limited on %s with no provider left to try", request.provider)
                raise

            logger.warning(
                "Rate limited on %s (%s), falling back to %s",
                request.provider,
                exc.error_type,
                next_request.provider,
            )
            self._fallback_from = request.provider
            return await self._attempt(next_request, attempted)

    def next_request(self, request: ChatRequest, attempted: tuple[str, ...]) -> Optional[ChatRequest]:
        """Build the request for the first untried downstream provider with a credential."""
        if not request.allow_fallback or not request.fallback_api_keys:
            return None

        try:
            start = self.chain.index(request.provider) + 1
        except ValueError:
            start = 0

        for provider in self.chain[start:]:
            if provider in attempted:
                continue
            api_key = request.fallback_api_keys.get(provider)
            if not api_key:
                continue
            return request.model_copy(
                update={
                    "provider": provider,
                    "model": default_model(provider),
                    "api_key": api_key,
                    "web_search_enabled": request.web_search_enabled and supports_web_search(provider),
                }
            )
        return None
