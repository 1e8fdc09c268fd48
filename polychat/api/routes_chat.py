from typing import Callable

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from polychat.core.logger import get_logger
from polychat.core.providers import MODELS_BY_PROVIDER, default_model, supports_web_search
from polychat.schemas.chat import ErrorBody, WireChatRequest
from polychat.services.upstream import build_upstream_request, normalize_upstream_error, resolve_api_key

logger = get_logger("polychat.routes_chat")

router = APIRouter(prefix="/api", tags=["chat"])

UPSTREAM_TIMEOUT = httpx.Timeout(connect=15.0, read=None, write=30.0, pool=15.0)

UpstreamClientFactory = Callable[[], httpx.AsyncClient]


def get_upstream_client_factory() -> UpstreamClientFactory:
    return lambda: httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)


def _error_response(status_code: int, error: ErrorBody) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error.model_dump(exclude_none=True))


@router.post("/chat")
async def chat(
    payload: WireChatRequest,
    client_factory: UpstreamClientFactory = Depends(get_upstream_client_factory),
):
    """Forward one chat request to the provider and pipe its event stream back unchanged."""
    provider = payload.provider
    api_key = resolve_api_key(provider, payload.apiKey)
    if not api_key:
        return _error_response(401, ErrorBody(type="missing_api_key", message="No API key is configured."))

    if not payload.messages:
        return _error_response(400, ErrorBody(type="invalid_request_error", message="Messages are required."))

    model = payload.model or default_model(provider)
    if model not in MODELS_BY_PROVIDER[provider]:
        return _error_response(
            400,
            ErrorBody(type="invalid_request_error", message=f"Model {model} is not available for {provider}."),
        )

    upstream = build_upstream_request(
        provider,
        model,
        payload.messages,
        web_search=payload.webSearchEnabled and supports_web_search(provider),
        api_key=api_key,
    )

    client = client_factory()
    try:
        request = client.build_request("POST", upstream.url, headers=upstream.headers, json=upstream.body)
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        await client.aclose()
        logger.error("%s request failed: %s", provider, exc)
        return _error_response(502, ErrorBody.unknown(f"Could not reach {provider}: {exc}"))

    if response.status_code >= 400:
        raw = await response.aread()
        await response.aclose()
        await client.aclose()
        text = raw.decode("utf-8", errors="replace")
        logger.error("%s API error %s: %s", provider, response.status_code, text[:500])
        return _error_response(response.status_code, normalize_upstream_error(provider, response.status_code, text))

    async def _close() -> None:
        await response.aclose()
        await client.aclose()

    async def _passthrough():
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            logger.error("%s stream error: %s", provider, exc)

    return StreamingResponse(
        _passthrough(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(_close),
    )
