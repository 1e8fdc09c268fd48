from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from polychat.core.providers import MODELS_BY_PROVIDER

Provider = Literal["claude", "gemini", "groq"]
Role = Literal["user", "assistant"]


def generate_id(prefix: str = "msg") -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebSearchResult(BaseModel):
    url: str
    title: str
    page_age: str | None = None


class SearchQuery(BaseModel):
    query: str
    results: list[WebSearchResult] = Field(default_factory=list)


class Citation(BaseModel):
    type: str = "web_search_result_location"
    url: str
    title: str
    cited_text: str = ""


class Message(BaseModel):
    id: str = Field(default_factory=generate_id)
    role: Role
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    search_queries: list[SearchQuery] | None = None
    citations: list[Citation] | None = None


class ChatTurn(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatTurn]
    model: str
    provider: Provider
    web_search_enabled: bool = False
    api_key: str | None = None
    fallback_api_keys: dict[Provider, str] | None = None
    allow_fallback: bool = False

    @model_validator(mode="after")
    def _check_model_belongs_to_provider(self) -> "ChatRequest":
        if self.model not in MODELS_BY_PROVIDER[self.provider]:
            raise ValueError(f"model {self.model!r} is not offered by provider {self.provider!r}")
        return self

    def to_wire(self) -> dict[str, Any]:
        """Outbound body for POST /api/chat. Fallback credentials never leave the client."""
        body: dict[str, Any] = {
            "messages": [turn.model_dump() for turn in self.messages],
            "model": self.model,
            "provider": self.provider,
            "webSearchEnabled": self.web_search_enabled,
        }
        if self.api_key:
            body["apiKey"] = self.api_key
        return body


class WireChatRequest(BaseModel):
    """Body accepted by the passthrough endpoint."""

    messages: list[ChatTurn] = Field(default_factory=list)
    model: str | None = None
    provider: Provider = "claude"
    webSearchEnabled: bool = False
    apiKey: str | None = None


class ErrorBody(BaseModel):
    type: str
    message: str
    errorCode: str | None = None

    @classmethod
    def unknown(cls, message: str = "An unknown error occurred.") -> "ErrorBody":
        return cls(type="unknown_error", message=message)


class FallbackInfo(BaseModel):
    occurred: bool = True
    from_provider: Provider
    to_provider: Provider
    reason: str


class StreamResult(BaseModel):
    text: str = ""
    search_queries: list[SearchQuery] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    aborted: bool | None = None
    fallback_info: FallbackInfo | None = None


class ChatSession(BaseModel):
    id: str
    title: str
    provider: Provider
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
