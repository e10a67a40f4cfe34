import json
import time
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .deps import build_http_client, build_resolver, get_http_client, get_resolver
from .errors import bad_request, to_http_error
from .logging_config import logger
from .provider.config import load_global_config
from .routing.exceptions import GatewayError
from .routing.resolver import ConfigResolver
from .settings import settings
from .upstream import filter_response_headers, open_upstream, relay_upstream


class HealthResponse(BaseModel):
    status: str = "ok"


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    owned_by: str = "lazygate"


class ModelsResponse(BaseModel):
    object: str = "list"
    data: List[ModelInfo] = Field(default_factory=list)


class RouteInfo(BaseModel):
    """
    Public view of a resolved route; credentials are never returned.
    """

    model: str
    provider: Optional[str] = None
    api_base: str


class RouteDeletedResponse(BaseModel):
    model: str
    deleted: bool


class BackendInfo(BaseModel):
    model: str
    pid: Optional[int] = None
    port: int
    api_base: str
    memory_bytes: int
    idle_seconds: float


class BackendsResponse(BaseModel):
    reserved_memory_bytes: int = 0
    data: List[BackendInfo] = Field(default_factory=list)


def _http_error_for(exc: GatewayError, model: str) -> HTTPException:
    http_exc = to_http_error(exc)
    if http_exc.status_code >= 500:
        logger.error("Resolution of %r failed: %s", model, exc, exc_info=exc)
    else:
        logger.info("Resolution of %r rejected: %s", model, exc)
    return http_exc


async def _read_json_object(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    try:
        body = json.loads(raw)
    except ValueError:
        raise bad_request("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise bad_request("Request body must be a JSON object")
    return body


async def _proxy_completion(
    request: Request,
    resolver: ConfigResolver,
    client: httpx.AsyncClient,
) -> StreamingResponse:
    body = await _read_json_object(request)
    model = body.get("model")
    if not isinstance(model, str) or not model:
        raise bad_request(
            "Request body must contain a non-empty string 'model' field",
            details={"field": "model"},
        )

    logger.info(
        "completion: model=%r stream=%r keys=%s path=%s",
        model,
        body.get("stream"),
        list(body.keys()),
        request.url.path,
    )

    try:
        resolved = await resolver.resolve(model)
        upstream_resp = await open_upstream(
            client=client,
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            original_body=body,
            resolved=resolved,
            timeout=settings.upstream_timeout,
        )
    except GatewayError as exc:
        raise _http_error_for(exc, model) from exc

    return StreamingResponse(
        relay_upstream(upstream_resp),
        status_code=upstream_resp.status_code,
        headers=filter_response_headers(upstream_resp.headers),
    )


def create_app(
    *,
    resolver: Optional[ConfigResolver] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    app = FastAPI(title="lazygate", version="0.1.0")

    owns_client = http_client is None
    app.state.http_client = http_client or build_http_client()
    app.state.resolver = resolver or build_resolver(app.state.http_client)

    @app.on_event("startup")
    async def _load_provider_config() -> None:
        # Fail fast on a broken provider document and create the empty
        # default when none exists yet.
        config = load_global_config(settings.global_config_path)
        logger.info(
            "Gateway starting with %d providers (%s); routes under %s",
            len(config.providers),
            ", ".join(config.providers) or "none",
            settings.config_dir,
        )

    @app.on_event("shutdown")
    async def _stop_backends() -> None:
        await app.state.resolver.pool.shutdown()
        if owns_client:
            await app.state.http_client.aclose()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Basic request/response logging middleware.
        """
        client_host = request.client.host if request.client else "-"
        headers_for_log = {}
        for k, v in request.headers.items():
            if k.lower() in ("authorization", "x-api-key"):
                headers_for_log[k] = "***REDACTED***"
            else:
                headers_for_log[k] = v

        logger.info(
            "HTTP %s %s from %s, headers=%s",
            request.method,
            request.url.path,
            client_host,
            headers_for_log,
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error while processing %s %s",
                request.method,
                request.url.path,
            )
            raise
        logger.info(
            "HTTP %s %s -> %s", request.method, request.url.path, response.status_code
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    @app.get("/v1/models", response_model=ModelsResponse)
    async def list_models(
        resolver: ConfigResolver = Depends(get_resolver),
    ) -> ModelsResponse:
        """
        Models that already have a persisted route.
        """
        return ModelsResponse(data=[ModelInfo(id=name) for name in resolver.list_models()])

    @app.post("/v1/chat/completions")
    async def chat_completions(
        request: Request,
        resolver: ConfigResolver = Depends(get_resolver),
        client: httpx.AsyncClient = Depends(get_http_client),
    ):
        return await _proxy_completion(request, resolver, client)

    @app.post("/v1/completions")
    async def completions(
        request: Request,
        resolver: ConfigResolver = Depends(get_resolver),
        client: httpx.AsyncClient = Depends(get_http_client),
    ):
        return await _proxy_completion(request, resolver, client)

    @app.post("/admin/routes/{model:path}/refresh", response_model=RouteInfo)
    async def refresh_route(
        model: str,
        resolver: ConfigResolver = Depends(get_resolver),
    ) -> RouteInfo:
        """
        Drop the persisted route for `model` and run discovery again.
        """
        try:
            resolved = await resolver.refresh(model)
        except GatewayError as exc:
            raise _http_error_for(exc, model) from exc
        return RouteInfo(model=model, provider=resolved.provider, api_base=resolved.api_base)

    @app.delete("/admin/routes/{model:path}", response_model=RouteDeletedResponse)
    async def delete_route(
        model: str,
        resolver: ConfigResolver = Depends(get_resolver),
    ) -> RouteDeletedResponse:
        try:
            deleted = await resolver.forget(model)
        except GatewayError as exc:
            raise _http_error_for(exc, model) from exc
        return RouteDeletedResponse(model=model, deleted=deleted)

    @app.get("/admin/backends", response_model=BackendsResponse)
    async def list_backends(
        resolver: ConfigResolver = Depends(get_resolver),
    ) -> BackendsResponse:
        now = time.monotonic()
        pool = resolver.pool
        return BackendsResponse(
            reserved_memory_bytes=pool.reserved_memory_bytes,
            data=[
                BackendInfo(
                    model=b.model_name,
                    pid=b.pid,
                    port=b.port,
                    api_base=b.api_base,
                    memory_bytes=b.memory_bytes,
                    idle_seconds=max(0.0, now - b.last_used),
                )
                for b in pool.snapshot()
            ],
        )

    return app


__all__ = ["create_app"]
