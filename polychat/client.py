"""
HTTP Client for the chat endpoint.
Wraps httpx AsyncClient with unified error handling and connect retries.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urljoin

import httpx

from polychat.core.providers import RATE_LIMIT_ERROR_TYPES
from polychat.schemas.chat import ErrorBody

logger = logging.getLogger("polychat.client")

AUTH_ERROR_TYPES = frozenset({"missing_api_key", "invalid_api_key", "authentication_error"})


class APIError(Exception):
    """Base exception for API errors. ``error.type`` is the discriminator shown to users."""

    default_type = "unknown_error"
    label = "ERROR"
    hints: tuple = ()

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: str = "",
        error: Optional[ErrorBody] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_text = response_text
        self.error = error or ErrorBody(type=self.default_type, message=message)
        super().__init__(message)

    @property
    def error_type(self) -> str:
        return self.error.type

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429 or self.error.type in RATE_LIMIT_ERROR_TYPES

    @property
    def is_auth_error(self) -> bool:
        return self.status_code == 401 or self.error.type in AUTH_ERROR_TYPES

    def user_friendly_message(self) -> str:
        lines = [f"[{self.label}] {self.message}"]
        if self.hints:
            lines.append("")
            lines.extend(f"  - {hint}" for hint in self.hints)
        return "\n".join(lines)


class NetworkError(APIError):
    """The backend could not be reached or dropped the connection."""

    default_type = "network_error"
    label = "NETWORK"
    hints = (
        "is the backend up? (polychat serve)",
        "does --api-base point at it?",
    )


class TimeoutError(APIError):
    default_type = "timeout_error"
    label = "TIMEOUT"
    hints = ("retry with a larger --timeout",)


class HTTPStatusError(APIError):
    """Non-2xx status without a usable error body."""

    @property
    def label(self) -> str:
        return f"HTTP {self.status_code or '?'}"

    def user_friendly_message(self) -> str:
        base = super().user_friendly_message()
        return f"{base}\n{self.response_text[:200]}" if self.response_text else base


class ChatAPIError(HTTPStatusError):
    """Non-2xx reply from /api/chat carrying the structured ``{type, message, errorCode}`` body."""

    @classmethod
    def from_response(cls, status_code: int, raw: bytes) -> "ChatAPIError":
        text = raw.decode("utf-8", errors="replace")
        error = parse_error_body(text)
        return cls(error.message, status_code=status_code, response_text=text, error=error)

    def user_friendly_message(self) -> str:
        if self.is_rate_limit:
            return (
                f"[RATE LIMIT] {self.error.message}\n\n"
                f"Wait a moment and try again, or add a key for another provider "
                f"(polychat keys set <provider> <key>) to enable automatic fallback."
            )
        if self.is_auth_error:
            return (
                f"[AUTH] {self.error.message}\n\n"
                f"Re-enter your API key with: polychat keys set <provider> <key>"
            )
        code = f" ({self.error.errorCode})" if self.error.errorCode else ""
        return f"[ERROR] {self.error.message}{code}"


def parse_error_body(text: str) -> ErrorBody:
    """Parse an error reply; anything unexpected becomes ``unknown_error``."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return ErrorBody.unknown()

    if not isinstance(data, dict):
        return ErrorBody.unknown()

    error_type = data.get("type")
    message = data.get("message") or data.get("error")
    if not isinstance(error_type, str):
        return ErrorBody.unknown(str(message)) if message else ErrorBody.unknown()

    error_code = data.get("errorCode")
    return ErrorBody(
        type=error_type,
        message=str(message or ""),
        errorCode=str(error_code) if error_code is not None else None,
    )


class AsyncAPIClient:
    """Talks to `/api/chat` over httpx.

    Connect failures are retried up to ``retry_times``. Once the stream has
    started nothing is retried; transport faults surface as ``NetworkError``.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        timeout: float = 30.0,
        retry_times: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.retry_times = max(1, retry_times)

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()

    def _log_request(self, method: str, url: str, **kwargs):
        """Log request details (without sensitive headers or keys)."""
        headers = kwargs.get("headers", {})
        safe_headers = {k: "***" for k in headers if k.lower() in ["authorization", "x-api-key"]}
        safe_headers.update({k: v for k, v in headers.items() if k.lower() not in ["authorization", "x-api-key"]})
        body = kwargs.get("json") or {}
        logger.debug(
            "%s %s | provider=%s model=%s | headers: %s",
            method,
            url,
            body.get("provider"),
            body.get("model"),
            safe_headers,
        )

    def _handle_error(self, error: Exception, attempt: int) -> None:
        """Handle different error types and log them."""
        logger.error("Request failed (attempt %s): %s: %s", attempt, type(error).__name__, error)

    async def _send(self, request: httpx.Request) -> httpx.Response:
        for attempt in range(1, self.retry_times + 1):
            try:
                return await self._client.send(request, stream=True)
            except httpx.ConnectTimeout as e:
                self._handle_error(e, attempt)
                if attempt >= self.retry_times:
                    raise NetworkError("Connection timeout: server may be unreachable") from e
            except httpx.TimeoutException as e:
                self._handle_error(e, attempt)
                raise TimeoutError("Stream request timeout") from e
            except httpx.ConnectError as e:
                self._handle_error(e, attempt)
                if attempt >= self.retry_times:
                    raise NetworkError(str(e)) from e
            except httpx.HTTPError as e:
                self._handle_error(e, attempt)
                raise NetworkError(f"HTTP error: {str(e)}") from e
        raise NetworkError("No connection attempt was made")

    @asynccontextmanager
    async def stream(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None, **kwargs
    ) -> AsyncIterator[httpx.Response]:
        """
        Make a streaming request and yield the response once its status is known good.

        Usage:
            async with client.stream("POST", "/api/chat", json=payload) as response:
                async for chunk in response.aiter_bytes():
                    ...

        Raises:
            ChatAPIError: Non-2xx HTTP status (structured error body)
            NetworkError: Connection failure
            TimeoutError: Request timeout
        """
        url = urljoin(self.base_url, path)
        self._log_request(method, url, json=json, **kwargs)

        # SSE streams get no read timeout so sparse server events don't trip it.
        stream_timeout = httpx.Timeout(
            connect=self.timeout,
            read=None,
            write=self.timeout,
            pool=self.timeout,
        )
        request = self._client.build_request(method, path, json=json, timeout=stream_timeout, **kwargs)
        response = await self._send(request)

        try:
            if response.status_code >= 400:
                raw = await response.aread()
                raise ChatAPIError.from_response(response.status_code, raw)
            yield response
        except httpx.TimeoutException as e:
            raise TimeoutError("Stream timed out while waiting for server events") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Stream HTTP error: {e}") from e
        finally:
            await response.aclose()
