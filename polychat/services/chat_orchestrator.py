"""Conversation state on top of the streaming core: send, stop, clear."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Iterable, Mapping, Optional

from polychat.client import APIError, AsyncAPIClient
from polychat.core.logger import get_logger
from polychat.core.providers import FALLBACK_CHAIN, MODELS_BY_PROVIDER, default_model, supports_web_search
from polychat.schemas.chat import ChatRequest, ChatTurn, ErrorBody, FallbackInfo, Message
from polychat.services.fallback import FallbackOrchestrator
from polychat.services.sse_decoders import StreamSinks
from polychat.services.stream_session import StreamSession

logger = get_logger("polychat.chat_orchestrator")

CredentialAccessor = Callable[[], Mapping[str, Optional[str]]]
MessageListener = Callable[[Message], Any]


class ChatOrchestrator:
    """
    Owns the committed message history and runs one user turn at a time.

    Credentials are pulled through ``credentials`` on every send, so key
    changes made elsewhere are picked up without rebuilding the orchestrator.
    """

    def __init__(
        self,
        client: AsyncAPIClient,
        *,
        provider: str = FALLBACK_CHAIN[0],
        credentials: Optional[CredentialAccessor] = None,
        observers: Optional[StreamSinks] = None,
        initial_messages: Optional[Iterable[Message]] = None,
        on_message_committed: Optional[MessageListener] = None,
        chain: Iterable[str] = FALLBACK_CHAIN,
    ) -> None:
        self.messages: list[Message] = list(initial_messages or [])
        self.session = StreamSession(client, observers)
        self.fallback = FallbackOrchestrator(self.session, chain)
        self.provider = provider
        self.model = default_model(provider)
        self.web_search_enabled = False
        self.fallback_info: Optional[FallbackInfo] = None
        self.error: Optional[ErrorBody] = None
        self._credentials = credentials or (lambda: {})
        self._on_message_committed = on_message_committed
        self._busy = False
        self._notifications: set[asyncio.Future] = set()

    @property
    def is_streaming(self) -> bool:
        return self._busy

    # -- selection -------------------------------------------------------------

    def set_provider(self, provider: str) -> None:
        if provider not in MODELS_BY_PROVIDER:
            raise ValueError(f"Unknown provider: {provider}")
        self.provider = provider
        self.model = default_model(provider)
        if not supports_web_search(provider):
            self.web_search_enabled = False

    def set_model(self, model: str) -> None:
        if model not in MODELS_BY_PROVIDER[self.provider]:
            raise ValueError(f"Model {model} is not available for {self.provider}")
        self.model = model

    def set_web_search(self, enabled: bool) -> None:
        self.web_search_enabled = enabled and supports_web_search(self.provider)

    # -- entry points ------------------------------------------------------------

    async def send_message(self, content: str) -> bool:
        """
        Run one user turn.

        Returns:
            True if the turn was aborted (the user message is retracted),
            False otherwise, including rejected sends and failed turns
            (see ``error``).
        """
        text = content.strip()
        if not text:
            return False
        if self._busy:
            logger.warning("Rejected send: a response is still streaming")
            return False

        user_message = Message(role="user", content=text)
        self.messages.append(user_message)
        self.session.reset()
        self.fallback_info = None
        self.error = None

        keys = {
            p: k for p, k in self._credentials().items() if k and p in MODELS_BY_PROVIDER
        }
        request = ChatRequest(
            messages=[ChatTurn(role=m.role, content=m.content) for m in self.messages],
            model=self.model,
            provider=self.provider,
            web_search_enabled=self.web_search_enabled and supports_web_search(self.provider),
            api_key=keys.get(self.provider),
            fallback_api_keys=keys or None,
            allow_fallback=any(p != self.provider for p in keys),
        )

        self._busy = True
        try:
            result = await self.fallback.run(request)
        except APIError as exc:
            self.error = exc.error
            logger.error("Chat request failed: %s: %s", exc.error_type, exc.error.message)
            self._notify(user_message)
            return False
        finally:
            self._busy = False

        if result.aborted:
            if self.messages and self.messages[-1] is user_message:
                self.messages.pop()
            return True

        if result.fallback_info and result.fallback_info.occurred:
            self.fallback_info = result.fallback_info
            self.set_provider(result.fallback_info.to_provider)

        assistant_message = Message(
            role="assistant",
            content=result.text,
            search_queries=result.search_queries or None,
            citations=result.citations or None,
        )
        self.messages.append(assistant_message)
        self._notify(user_message)
        self._notify(assistant_message)
        return False

    def stop_generation(self) -> None:
        self.fallback.abort()

    def clear_messages(self) -> None:
        if self._busy:
            self.stop_generation()
        self.messages = []
        self.session.reset()

    def clear_error(self) -> None:
        self.error = None
        self.session.clear_error()

    def clear_fallback_info(self) -> None:
        self.fallback_info = None

    # -- persistence notification ------------------------------------------------

    def _notify(self, message: Message) -> None:
        if self._on_message_committed is None:
            return
        try:
            outcome = self._on_message_committed(message)
        except Exception:
            logger.exception("message listener failed for %s", message.id)
            return
        if inspect.isawaitable(outcome):
            future = asyncio.ensure_future(outcome)
            self._notifications.add(future)
            future.add_done_callback(self._notification_done)

    def _notification_done(self, future: asyncio.Future) -> None:
        self._notifications.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("message listener failed: %s", future.exception())
