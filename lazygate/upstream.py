import copy
import json
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx

from .logging_config import logger
from .models import ResolvedConfig
from .routing.exceptions import UpstreamError


# Response headers that describe the upstream connection rather than the
# payload; the gateway's own server sets these for the client.
_HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return `base` with `override` merged on top; override wins at every depth.

    Neither input is modified.
    """
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_outbound_headers(
    headers: Optional[Mapping[str, str]], api_key: Optional[str]
) -> Dict[str, str]:
    """
    Configured headers plus `authorization: Bearer <api_key>`.

    The bearer header is only synthesised when no authorization header was
    configured explicitly.
    """
    outbound: Dict[str, str] = dict(headers or {})
    has_auth = any(name.lower() == "authorization" for name in outbound)
    if api_key and not has_auth:
        outbound["authorization"] = f"Bearer {api_key}"
    return outbound


def build_upstream_url(api_base: str, path: str, query: str = "") -> str:
    """
    Join the inbound path onto an api_base that already carries /v1.

    "/v1/chat/completions" against "https://host/api/v1" becomes
    "https://host/api/v1/chat/completions".
    """
    suffix = path
    if suffix == "/v1" or suffix.startswith("/v1/"):
        suffix = suffix[len("/v1"):]
    url = f"{api_base.rstrip('/')}/{suffix.lstrip('/')}"
    return f"{url}?{query}" if query else url


def filter_response_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in _HOP_BY_HOP_RESPONSE_HEADERS
    }


async def open_upstream(
    *,
    client: httpx.AsyncClient,
    method: str,
    path: str,
    original_body: Dict[str, Any],
    resolved: ResolvedConfig,
    query: str = "",
    timeout: Optional[float] = None,
) -> httpx.Response:
    """
    Send the merged request to the resolved backend and return the
    response with its body still unread.

    Raises UpstreamError when the backend cannot be reached; HTTP error
    statuses are returned as-is so the caller can relay them.
    """
    url = build_upstream_url(resolved.api_base, path, query)
    headers = build_outbound_headers(resolved.headers, resolved.api_key)
    body = deep_merge(original_body, resolved.body)

    logger.info(
        "upstream: %s %s for model %r via provider %r",
        method,
        url,
        resolved.model,
        resolved.provider,
    )
    request = client.build_request(method, url, headers=headers, json=body, timeout=timeout)
    try:
        resp = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        logger.warning("upstream: request to %s failed: %s", url, exc)
        raise UpstreamError(f"Upstream request failed: {exc}") from exc

    if resp.status_code >= 400:
        logger.warning("upstream: %s answered HTTP %s", url, resp.status_code)
    return resp


async def relay_upstream(resp: httpx.Response) -> AsyncIterator[bytes]:
    """
    Yield the upstream body chunk by chunk and always close the upstream
    response, including when the client goes away mid-stream.

    A transport error after the stream started cannot become an HTTP error
    any more; event streams get a final SSE error frame instead.
    """
    is_event_stream = "text/event-stream" in resp.headers.get("content-type", "")
    try:
        async for chunk in resp.aiter_bytes():
            if chunk:
                yield chunk
    except httpx.HTTPError as exc:
        logger.warning("upstream: stream from %s broke: %s", resp.request.url, exc)
        if is_event_stream:
            payload = {"error": {"type": "upstream_error", "message": str(exc)}}
            yield f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")
    finally:
        await resp.aclose()


__all__ = [
    "build_outbound_headers",
    "build_upstream_url",
    "deep_merge",
    "filter_response_headers",
    "open_upstream",
    "relay_upstream",
]
