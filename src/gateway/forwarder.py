# src/gateway/forwarder.py

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator

import aiohttp
from fastapi import Response
from fastapi.responses import StreamingResponse

from common.config import ProxyConfig
from common.errors import BackendResponseError, ProxyError, ProxyInternalError
from common.logging_utils import log_event
from common.schemas.proxy_request import ProxyRequest
from gateway.backend_client import OllamaBackendClient
from gateway.payload_augmenter import prepare_body


BODYLESS_METHODS = ("GET", "HEAD")


class Forwarder:
    """
    Relays one authenticated request to Ollama.

    - Generate/chat bodies go through the payload augmenter first.
    - Streaming payloads are piped chunk by chunk; everything else is
      buffered and re-emitted with the backend's status code.
    - Single attempt. Errors surface as ProxyError subclasses which the
      gateway renders as JSON.
    """

    def __init__(self, config: ProxyConfig, backend: OllamaBackendClient):
        self.config = config
        self.backend = backend
        self.timeout_s = config.REQUEST_TIMEOUT_MS / 1000

    async def forward(self, request: ProxyRequest) -> Response:
        method = request.method.upper()
        start_time = time.monotonic()

        if request.body_stream is not None:
            outbound_body, stream, augmented = request.body_stream, False, None
        else:
            body, stream, augmented = prepare_body(method, request.path, request.body)
            outbound_body = None if method in BODYLESS_METHODS else body

        log_event(
            "proxy_request_received",
            request_id=request.request_id,
            model=augmented.get("model") if augmented else None,
            extra={
                "method": method,
                "path": request.path,
                "augmented": augmented is not None,
                "stream": stream,
            },
            level="debug" if augmented is None else "info",
        )

        try:
            resp = await self.backend.open(
                method,
                request.path_with_query,
                body=outbound_body,
                timeout_s=self.timeout_s,
            )
        except ProxyError as e:
            self._log_failure(request, e)
            raise
        except Exception as e:
            err = ProxyInternalError(str(e) or type(e).__name__)
            self._log_failure(request, err)
            raise err from e

        if stream and 200 <= resp.status < 300:
            return self._relay_stream(request, resp, start_time)

        return await self._buffered(request, resp, start_time)

    # --------------------------------------------------
    # Buffered path
    # --------------------------------------------------
    async def _buffered(
        self,
        request: ProxyRequest,
        resp: aiohttp.ClientResponse,
        start_time: float,
    ) -> Response:
        content_type = resp.headers.get("Content-Type", "application/json")
        try:
            content = await resp.read()
        except asyncio.TimeoutError as e:
            err = ProxyInternalError(
                f"Timed out after {self.timeout_s:.0f}s reading {request.path}"
            )
            self._log_failure(request, err)
            raise err from e
        except aiohttp.ClientError as e:
            err = ProxyInternalError(str(e) or type(e).__name__)
            self._log_failure(request, err)
            raise err from e
        finally:
            resp.release()

        if not 200 <= resp.status < 300:
            err = BackendResponseError(resp.status, content, content_type)
            self._log_failure(request, err)
            raise err

        log_event(
            "proxy_request_completed",
            request_id=request.request_id,
            extra={
                "status": resp.status,
                "bytes": len(content),
                "latency_ms": _elapsed_ms(start_time),
            },
        )
        return Response(content=content, status_code=resp.status, media_type=content_type)

    # --------------------------------------------------
    # Streaming path
    # --------------------------------------------------
    def _relay_stream(
        self,
        request: ProxyRequest,
        resp: aiohttp.ClientResponse,
        start_time: float,
    ) -> StreamingResponse:
        content_type = resp.headers.get("Content-Type", "application/json")

        async def relay() -> AsyncIterator[bytes]:
            total_bytes = 0
            chunk_count = 0
            completed = False
            try:
                async for chunk in resp.content.iter_any():
                    chunk_count += 1
                    total_bytes += len(chunk)
                    yield chunk
                completed = True
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                # Headers are already sent; the client sees a truncated stream
                log_event(
                    "proxy_stream_interrupted",
                    request_id=request.request_id,
                    error=repr(e),
                    extra={"chunks": chunk_count, "bytes": total_bytes},
                    level="error",
                )
            finally:
                if completed:
                    resp.release()
                else:
                    # Client went away or the stream broke: abandon the backend call
                    resp.close()

                log_event(
                    "proxy_stream_completed" if completed else "proxy_stream_abandoned",
                    request_id=request.request_id,
                    extra={
                        "chunks": chunk_count,
                        "bytes": total_bytes,
                        "latency_ms": _elapsed_ms(start_time),
                    },
                    level="info" if completed else "warning",
                )

        return StreamingResponse(relay(), status_code=resp.status, media_type=content_type)

    def _log_failure(self, request: ProxyRequest, err: ProxyError):
        log_event(
            "proxy_request_failed",
            request_id=request.request_id,
            error=err.message or err.error,
            extra={
                "method": request.method,
                "path": request.path,
                "status": err.status_code,
            },
            level="error",
        )


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)
