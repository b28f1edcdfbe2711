# src/gateway/gateway_server.py

import argparse
import asyncio
import dataclasses
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from common.config import ProxyConfig
from common.errors import (
    AuthenticationError,
    BackendResponseError,
    ConfigError,
    PayloadTooLargeError,
    ProxyError,
)
from common.logging_utils import configure_logging, log_event
from common.schemas.proxy_request import ProxyRequest
from gateway.auth import require_bearer_token
from gateway.backend_client import OllamaBackendClient, model_matches
from gateway.forwarder import Forwarder
from gateway.request_models import HealthReport, UnhealthyReport
from keepalive.model_warmer import ModelWarmer


# Ollama API surface relayed by the gateway, all behind the bearer token
PROXIED_ROUTES = [
    ("GET", "/api/version"),
    ("GET", "/api/tags"),
    ("GET", "/api/ps"),
    ("POST", "/api/generate"),
    ("POST", "/api/chat"),
    ("POST", "/api/create"),
    ("POST", "/api/pull"),
    ("POST", "/api/push"),
    ("POST", "/api/embed"),
    ("POST", "/api/embeddings"),
    ("POST", "/api/show"),
    ("POST", "/api/copy"),
    ("DELETE", "/api/delete"),
    ("HEAD", "/api/blobs/{digest}"),
    ("POST", "/api/blobs/{digest}"),
]

BLOB_PATH_PREFIX = "/api/blobs/"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _route_name(method: str, path: str) -> str:
    slug = path.strip("/").replace("/", "_").replace("{", "").replace("}", "")
    return f"proxy_{method.lower()}_{slug}"


# --------------------------------------------------
# Request handlers
# --------------------------------------------------
async def _read_body(request: Request, limit: int) -> bytes:
    declared = request.headers.get("Content-Length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"body exceeds {limit} bytes")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise PayloadTooLargeError(f"body exceeds {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


async def proxy_endpoint(request: Request) -> Response:
    config: ProxyConfig = request.app.state.config
    forwarder: Forwarder = request.app.state.forwarder

    proxy_request = ProxyRequest(
        method=request.method,
        path=request.url.path,
        query_string=request.url.query,
    )

    if request.method == "POST" and request.url.path.startswith(BLOB_PATH_PREFIX):
        # Model layers can be gigabytes; relay without buffering
        proxy_request.body_stream = request.stream()
    elif request.method not in ("GET", "HEAD"):
        proxy_request.body = await _read_body(request, config.MAX_BODY_BYTES)

    return await forwarder.forward(proxy_request)


async def health(request: Request) -> JSONResponse:
    config: ProxyConfig = request.app.state.config
    backend: OllamaBackendClient = request.app.state.backend
    warmer: ModelWarmer = request.app.state.warmer
    timeout_s = config.HEALTH_TIMEOUT_MS / 1000

    try:
        version = await backend.version(timeout_s=timeout_s)
        running = await backend.running_models(timeout_s=timeout_s)
    except ProxyError as e:
        log_event("health_check_failed", error=e.message or e.error, level="warning")
        report = UnhealthyReport(timestamp=_now_iso(), error=e.message or e.error)
        return JSONResponse(report.model_dump(), status_code=503)

    report = HealthReport(
        timestamp=_now_iso(),
        ollama_url=config.BACKEND_URL,
        ollama_version=version,
        model_loaded=any(model_matches(name, config.MODEL_NAME) for name in running),
        model_name=config.MODEL_NAME,
        warmup_state=warmer.state.value,
    )
    return JSONResponse(report.model_dump())


# --------------------------------------------------
# Error rendering
# --------------------------------------------------
async def _handle_proxy_error(request: Request, exc: ProxyError) -> Response:
    if isinstance(exc, BackendResponseError):
        # Ollama's own error body, untouched
        return Response(
            content=exc.body,
            status_code=exc.status_code,
            media_type=exc.content_type,
        )

    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}

    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


# --------------------------------------------------
# App factory
# --------------------------------------------------
def create_app(
    config: ProxyConfig,
    backend: Optional[OllamaBackendClient] = None,
) -> FastAPI:
    backend = backend or OllamaBackendClient(config.BACKEND_URL)
    warmer = ModelWarmer(config, backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_event(
            "gateway_started",
            model=config.MODEL_NAME,
            extra={
                "host": config.HOST,
                "port": config.PORT,
                "backend_url": config.BACKEND_URL,
                "health_check": f"http://localhost:{config.PORT}/health",
            },
        )

        if config.WARMUP_ENABLED:
            app.state.warmup_task = asyncio.create_task(
                warmer.start(delay_s=config.WARMUP_DELAY_MS / 1000),
                name="ollama-warmup",
            )
        else:
            log_event("warmup_disabled", model=config.MODEL_NAME)

        try:
            yield
        finally:
            log_event("gateway_shutting_down")
            warmup_task = app.state.warmup_task
            if warmup_task is not None and not warmup_task.done():
                warmup_task.cancel()
                try:
                    await warmup_task
                except asyncio.CancelledError:
                    pass
            await warmer.stop()
            await backend.close()

    app = FastAPI(title="Ollama Keepalive Gateway", lifespan=lifespan)

    app.state.config = config
    app.state.backend = backend
    app.state.forwarder = Forwarder(config, backend)
    app.state.warmer = warmer
    app.state.warmup_task = None

    app.add_exception_handler(ProxyError, _handle_proxy_error)

    app.add_api_route(
        "/health",
        health,
        methods=["GET"],
        responses={503: {"model": UnhealthyReport}},
        response_model=HealthReport,
    )

    for method, path in PROXIED_ROUTES:
        # FastAPI, unlike plain Starlette routes, doesn't imply HEAD for GET
        methods = [method, "HEAD"] if method == "GET" else [method]
        app.add_api_route(
            path,
            proxy_endpoint,
            methods=methods,
            dependencies=[Depends(require_bearer_token)],
            name=_route_name(method, path),
        )

    return app


# --------------------------------------------------
# Entry point
# --------------------------------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(description="Authenticated keepalive gateway for Ollama")
    parser.add_argument("--host", type=str, default=None, help="Listen address")
    parser.add_argument("--port", type=int, default=None, help="Listen port")
    args = parser.parse_args(argv)

    try:
        config = ProxyConfig.from_env()
    except ConfigError as e:
        log_event("gateway_config_error", error=str(e), level="error")
        sys.exit(1)

    configure_logging(config.LOG_LEVEL)

    if args.host or args.port:
        config = dataclasses.replace(
            config,
            HOST=args.host or config.HOST,
            PORT=args.port or config.PORT,
        )

    import uvicorn

    uvicorn.run(
        create_app(config),
        host=config.HOST,
        port=config.PORT,
        timeout_graceful_shutdown=config.SHUTDOWN_GRACE_S,
    )


if __name__ == "__main__":
    main()
