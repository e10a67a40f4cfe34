"""
Config resolution: model name -> fully merged upstream configuration.

Steady state is a single TOML read. The first request for an unseen
model runs discovery across the configured providers in declaration
order, persists the winning route and then goes through the same
load-and-validate path as every later request.

Discovery is single-flight per model: concurrent callers for the same
unrouted model await one shared task instead of each probing providers,
spawning backends and writing the route file. The task is shielded, so
a caller that disconnects does not cancel discovery for the others.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from typing import Dict, List, Optional

import httpx
from huggingface_hub.utils import HfHubHTTPError

from lazygate.logging_config import logger
from lazygate.models import (
    GlobalConfig,
    LocalQuantizedProvider,
    ModelRoute,
    Provider,
    RemoteListingProvider,
    ResolvedConfig,
)
from lazygate.process_pool import ProcessPoolManager
from lazygate.provider.local import LocalDiscovery
from lazygate.provider.remote import discover_remote
from lazygate.routing.exceptions import (
    CapacityExhausted,
    InvalidPersistedState,
    ModelNotFound,
    UpstreamError,
)
from lazygate.routing.result import DiscoveryOutcome, FallbackResult, try_in_order
from lazygate.storage.route_store import RouteStore, storage_key
from lazygate.upstream import deep_merge


ConfigLoader = Callable[[], GlobalConfig]


class ConfigResolver:
    def __init__(
        self,
        *,
        store: RouteStore,
        config_loader: ConfigLoader,
        pool: ProcessPoolManager,
        http_client: httpx.AsyncClient,
        local_discovery: LocalDiscovery,
        discovery_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.config_loader = config_loader
        self.pool = pool
        self.http_client = http_client
        self.local_discovery = local_discovery
        self.discovery_timeout = discovery_timeout
        self._inflight: Dict[str, asyncio.Task[FallbackResult]] = {}

    # -- public API ------------------------------------------------------

    async def resolve(self, model_name: str) -> ResolvedConfig:
        """
        Return the merged configuration for `model_name`.

        Raises SecurityRejection for names that cannot be stored safely,
        ModelNotFound when no provider can serve the model and
        InvalidPersistedState when the stored route is unusable.
        """
        key = storage_key(model_name)

        route = self.store.load(model_name)
        if route is None:
            result = await self._discover_once(key, model_name)
            if not result.succeeded:
                raise ModelNotFound(model_name, result.attempted)
            route = self.store.load(model_name)
            if route is None:
                # Deleted between persisting and reading back.
                raise ModelNotFound(model_name, result.attempted)

        return await self._materialize(model_name, route, self.config_loader())

    async def refresh(self, model_name: str) -> ResolvedConfig:
        """
        Forget the stored route and any backend for it, then resolve again.
        """
        await self.forget(model_name)
        return await self.resolve(model_name)

    async def forget(self, model_name: str) -> bool:
        storage_key(model_name)
        removed = self.store.delete(model_name)
        stopped = await self.pool.remove(model_name)
        if stopped:
            logger.info("resolver: stopped local backend for forgotten model %r", model_name)
        return removed

    def list_models(self) -> List[str]:
        return self.store.list_models()

    # -- discovery -------------------------------------------------------

    async def _discover_once(self, key: str, model_name: str) -> FallbackResult:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._discover_and_persist(model_name))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._discovery_done, key))
        else:
            logger.info("resolver: joining in-flight discovery for %r", model_name)
        return await asyncio.shield(task)

    def _discovery_done(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "resolver: discovery task for %s failed: %s", key, task.exception()
            )

    async def _discover_and_persist(self, model_name: str) -> FallbackResult:
        existing = self.store.load(model_name)
        if existing is not None:
            return FallbackResult(winner=existing.provider, route=existing)

        config = self.config_loader()
        logger.info(
            "resolver: discovering %r across providers [%s]",
            model_name,
            ", ".join(config.providers),
        )
        result = await try_in_order(
            (name, functools.partial(self._run_strategy, name, provider, model_name))
            for name, provider in config.providers.items()
        )
        if not result.succeeded:
            logger.warning(
                "resolver: no provider could serve %r (attempted: %s)",
                model_name,
                ", ".join(result.attempted) or "none",
            )
            return result

        assert result.route is not None and result.winner is not None
        provider = config.providers[result.winner]
        self.store.save(model_name, self._persistable(result.route, provider))
        return result

    async def _run_strategy(
        self, name: str, provider: Provider, model_name: str
    ) -> DiscoveryOutcome:
        if isinstance(provider, RemoteListingProvider):
            return await discover_remote(
                self.http_client,
                name,
                provider,
                model_name,
                timeout=self.discovery_timeout,
            )
        if isinstance(provider, LocalQuantizedProvider):
            return await self.local_discovery.discover(name, provider, model_name)
        raise TypeError(f"Unsupported provider type {type(provider).__name__}")

    @staticmethod
    def _persistable(route: ModelRoute, provider: Provider) -> ModelRoute:
        # A local backend's port is only valid for the current process.
        if isinstance(provider, LocalQuantizedProvider):
            return route.model_copy(update={"api_base": None})
        return route

    # -- materialisation -------------------------------------------------

    async def _materialize(
        self, model_name: str, route: ModelRoute, config: GlobalConfig
    ) -> ResolvedConfig:
        if route.provider is None:
            if not route.api_base:
                raise InvalidPersistedState(
                    f"Persisted route for {model_name!r} has neither provider nor api_base"
                )
            return ResolvedConfig(
                model=model_name,
                api_base=route.api_base,
                api_key=route.api_key,
                headers=dict(route.headers),
                body=dict(route.body),
            )

        provider = config.providers.get(route.provider)
        if provider is None:
            raise InvalidPersistedState(
                f"Persisted route for {model_name!r} references unknown provider {route.provider!r}",
                details={"provider": route.provider},
            )

        api_base = route.api_base
        if api_base is None and isinstance(provider, LocalQuantizedProvider):
            if route.repo_id and route.file_path:
                api_base = await self._local_api_base(model_name, route, provider)
        if api_base is None:
            api_base = provider.api_base
        if not api_base:
            raise InvalidPersistedState(
                f"Persisted route for {model_name!r} does not resolve to an api_base",
                details={"provider": route.provider},
            )

        return ResolvedConfig(
            model=model_name,
            provider=route.provider,
            api_base=api_base,
            api_key=route.api_key or provider.api_key,
            headers={**provider.headers, **route.headers},
            body=deep_merge(provider.body, route.body),
        )

    async def _local_api_base(
        self, model_name: str, route: ModelRoute, provider: LocalQuantizedProvider
    ) -> str:
        backend = self.pool.get(model_name)
        if backend is not None:
            self.pool.touch(model_name)
            return backend.api_base

        if route.file_size_bytes is None:
            raise InvalidPersistedState(
                f"Persisted local route for {model_name!r} lacks file_size_bytes"
            )

        logger.info(
            "resolver: no backend running for %r; restarting from %s/%s",
            model_name,
            route.repo_id,
            route.file_path,
        )
        try:
            backend = await self.local_discovery.ensure_running(
                model_name,
                provider,
                repo_id=route.repo_id,
                file_path=route.file_path,
                file_size_bytes=route.file_size_bytes,
            )
        except (HfHubHTTPError, httpx.HTTPError, OSError) as exc:
            raise UpstreamError(f"Could not start local backend for {model_name!r}: {exc}") from exc

        if backend is None:
            raise CapacityExhausted(model_name, route.file_size_bytes)
        return backend.api_base


__all__ = ["ConfigLoader", "ConfigResolver"]
