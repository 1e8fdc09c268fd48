"""Provider HTTP requests and error normalisation for the passthrough endpoint."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Optional

from polychat.core.logger import get_logger
from polychat.schemas.chat import ChatTurn, ErrorBody

logger = get_logger("polychat.upstream")

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_WEB_SEARCH_BETA = "web-search-2025-03-05"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"

MAX_TOKENS = 4096
WEB_SEARCH_MAX_USES = 5

SERVER_KEY_ENV = {
    "claude": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "groq": "GROQ_API_KEY",
}

FRIENDLY_MESSAGES = {
    "rate_limit_error": "Rate limit exceeded. Please wait a moment and try again.",
    "authentication_error": "API authentication failed. Please check your API key.",
    "invalid_request_error": "Invalid request. Please check your message.",
    "overloaded_error": "The provider is overloaded. Please try again shortly.",
    "api_error": "The provider returned an API error. Please try again shortly.",
}


@dataclass
class UpstreamRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


def resolve_api_key(provider: str, client_key: Optional[str]) -> Optional[str]:
    """Server-side environment keys win over the key sent by the client."""
    env_name = SERVER_KEY_ENV.get(provider)
    server_key = (os.getenv(env_name) or "").strip() if env_name else ""
    return server_key or (client_key or "").strip() or None


def build_upstream_request(
    provider: str,
    model: str,
    messages: list[ChatTurn],
    web_search: bool,
    api_key: str,
) -> UpstreamRequest:
    if provider == "claude":
        return _anthropic_request(model, messages, web_search, api_key)
    if provider == "gemini":
        return _gemini_request(model, messages, web_search, api_key)
    if provider == "groq":
        return _groq_request(model, messages, api_key)
    raise ValueError(f"Unsupported provider: {provider}")


def _anthropic_request(model: str, messages: list[ChatTurn], web_search: bool, api_key: str) -> UpstreamRequest:
    body: dict[str, Any] = {
        "model": model,
        "max_tokens": MAX_TOKENS,
        "stream": True,
        "messages": [{"role": m.role, "content": m.content} for m in messages],
    }
    headers = {
        "Content-Type": "application/json",
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
    }
    if web_search:
        body["tools"] = [{"type": "web_search_20250305", "name": "web_search", "max_uses": WEB_SEARCH_MAX_USES}]
        headers["anthropic-beta"] = ANTHROPIC_WEB_SEARCH_BETA
    return UpstreamRequest(url=ANTHROPIC_API_URL, headers=headers, body=body)


def _gemini_request(model: str, messages: list[ChatTurn], web_search: bool, api_key: str) -> UpstreamRequest:
    body: dict[str, Any] = {
        "contents": [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
        ],
        "generationConfig": {"maxOutputTokens": MAX_TOKENS},
    }
    if web_search:
        body["tools"] = [{"google_search": {}}]
    return UpstreamRequest(
        url=f"{GEMINI_API_BASE}/{model}:streamGenerateContent?alt=sse",
        headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
        body=body,
    )


def _groq_request(model: str, messages: list[ChatTurn], api_key: str) -> UpstreamRequest:
    return UpstreamRequest(
        url=GROQ_API_URL,
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
        body={
            "model": model,
            "max_tokens": MAX_TOKENS,
            "stream": True,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        },
    )


def _as_code(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def normalize_upstream_error(provider: str, status_code: int, text: str) -> ErrorBody:
    """Map a provider error reply onto ``{type, message, errorCode}``."""
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        parsed = None

    error = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(error, dict):
        if provider == "gemini":
            return ErrorBody(type=f"gemini_error_{status_code}", message=text[:200] or "Gemini request failed.")
        if provider == "groq" and status_code == 429:
            return ErrorBody(type="rate_limit_error", message=FRIENDLY_MESSAGES["rate_limit_error"])
        return ErrorBody.unknown()

    if provider == "claude":
        error_type = error.get("type") or "api_error"
        return ErrorBody(
            type=error_type,
            message=FRIENDLY_MESSAGES.get(error_type, error.get("message") or text),
            errorCode=_as_code(parsed.get("request_id")),
        )

    if provider == "gemini":
        return ErrorBody(
            type=f"gemini_error_{error.get('code') or status_code}",
            message=error.get("message") or "Gemini request failed.",
            errorCode=_as_code(error.get("status")),
        )

    if status_code == 429:
        error_type = "rate_limit_error"
    elif status_code == 401:
        error_type = "authentication_error"
    elif 400 <= status_code < 500:
        error_type = "invalid_request_error"
    else:
        error_type = "unknown_error"
    return ErrorBody(
        type=error_type,
        message=FRIENDLY_MESSAGES.get(error_type, error.get("message") or text),
        errorCode=_as_code(error.get("code")),
    )
