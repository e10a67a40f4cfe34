"""
Remote listing discovery.

Asks an OpenAI-compatible provider for its `/models` catalogue and looks
for the requested model. Some providers list their own id under `id`
and the original hub repository under `hugging_face_id`, with casing
that does not always match the hub, so both fields are compared
case-insensitively. The first matching entry in listing order wins.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from lazygate.logging_config import logger
from lazygate.models import ModelRoute, RemoteListingProvider
from lazygate.routing.result import DiscoveryOutcome, Matched, NoMatch, TransientFailure
from lazygate.upstream import build_outbound_headers


PRIMARY_ID_FIELD = "id"
ALIAS_ID_FIELD = "hugging_face_id"


def _extract_entries(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return [m for m in payload["data"] if isinstance(m, dict)]
    if isinstance(payload, list):
        return [m for m in payload if isinstance(m, dict)]
    return []


def match_listing_entry(
    entries: List[Dict[str, Any]], model_name: str
) -> Optional[Dict[str, Any]]:
    wanted = model_name.casefold()
    for entry in entries:
        for field_name in (PRIMARY_ID_FIELD, ALIAS_ID_FIELD):
            value = entry.get(field_name)
            if isinstance(value, str) and value.casefold() == wanted:
                return entry
    return None


async def discover_remote(
    client: httpx.AsyncClient,
    provider_name: str,
    provider: RemoteListingProvider,
    model_name: str,
    *,
    timeout: Optional[float] = None,
) -> DiscoveryOutcome:
    url = f"{provider.api_base}/models"
    headers = build_outbound_headers(provider.headers, provider.api_key)
    headers.setdefault("accept", "application/json")

    logger.info("discovery: listing models from provider %s at %s", provider_name, url)
    try:
        resp = await client.get(url, headers=headers, timeout=timeout)
        resp.raise_for_status()
        payload = resp.json()
    except httpx.HTTPError as exc:
        return TransientFailure(f"listing {url} failed: {exc}")
    except ValueError as exc:
        return TransientFailure(f"listing {url} returned invalid JSON: {exc}")

    entries = _extract_entries(payload)
    entry = match_listing_entry(entries, model_name)
    if entry is None:
        return NoMatch(f"{model_name!r} not among {len(entries)} models listed by {provider_name}")

    upstream_id = entry.get(PRIMARY_ID_FIELD) or entry.get(ALIAS_ID_FIELD)
    logger.info(
        "discovery: provider %s serves %r as %r", provider_name, model_name, upstream_id
    )
    # Only the provider name is persisted; its api_base/api_key/headers
    # are merged in from live config on every resolution.
    return Matched(ModelRoute(provider=provider_name, body={"model": upstream_id}))


__all__ = ["ALIAS_ID_FIELD", "discover_remote", "match_listing_entry"]
