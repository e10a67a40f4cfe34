import random
from typing import Optional

import httpx
from fastapi import Request

from .process_pool import ProcessPoolManager
from .provider.config import GlobalConfigLoader
from .provider.hub import HubClient
from .provider.local import LocalDiscovery
from .routing.resolver import ConfigResolver
from .settings import Settings, settings
from .storage.route_store import RouteStore


def build_http_client(cfg: Settings = settings) -> httpx.AsyncClient:
    """
    Shared AsyncClient for discovery and upstream calls.

    Responses are streamed back to the caller after the handler returns,
    so the client must outlive the request and is closed on shutdown.
    """
    return httpx.AsyncClient(timeout=cfg.upstream_timeout)


def build_resolver(
    http_client: httpx.AsyncClient,
    cfg: Settings = settings,
    *,
    rng: Optional[random.Random] = None,
) -> ConfigResolver:
    pool = ProcessPoolManager(
        port_start=cfg.local_backend_port_start,
        host=cfg.local_backend_host,
        kill_timeout=cfg.backend_kill_timeout,
    )
    hub = HubClient(
        http_client,
        token=cfg.hf_token,
        endpoint=cfg.hf_endpoint,
        header_bytes=cfg.gguf_header_bytes,
    )
    return ConfigResolver(
        store=RouteStore(cfg.config_dir),
        config_loader=GlobalConfigLoader(cfg.global_config_path),
        pool=pool,
        http_client=http_client,
        local_discovery=LocalDiscovery(hub, pool, models_dir=cfg.models_dir, rng=rng),
        discovery_timeout=cfg.discovery_timeout,
    )


async def get_http_client(request: Request) -> httpx.AsyncClient:
    """
    FastAPI dependency returning the application-wide AsyncClient.

    Tests override this with a client backed by httpx.MockTransport.
    """
    return request.app.state.http_client


async def get_resolver(request: Request) -> ConfigResolver:
    return request.app.state.resolver
