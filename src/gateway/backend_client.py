# src/gateway/backend_client.py

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import aiohttp

from common.errors import (
    BackendResponseError,
    BackendUnavailableError,
    ProxyInternalError,
)
from common.logging_utils import log_event


def model_matches(name: str, model_name: str) -> bool:
    """Exact match, or `model_name` followed by a tag separator."""
    return name == model_name or name.startswith(model_name + ":")


class OllamaBackendClient:
    """
    Thin aiohttp client for the Ollama HTTP API.

    One ClientSession is opened lazily and shared by the forwarder, the
    health check and the model warmer. No retries: every call is a single
    attempt and failures are translated into the gateway's error types.
    """

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Ollama responses are relayed as-is; don't decompress them
            self._session = aiohttp.ClientSession(auto_decompress=False)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def url_for(self, path_with_query: str) -> str:
        return f"{self.base_url}{path_with_query}"

    # --------------------------------------------------
    # Raw request (used by the forwarder)
    # --------------------------------------------------
    async def open(
        self,
        method: str,
        path_with_query: str,
        *,
        body: Optional[Union[bytes, AsyncIterator[bytes]]],
        timeout_s: float,
    ) -> aiohttp.ClientResponse:
        """
        Send one request and return the live response with the body unread.
        Caller owns the response and must release() it.
        """
        headers = {"Content-Type": "application/json"}
        try:
            return await self._get_session().request(
                method,
                self.url_for(path_with_query),
                data=body,
                headers=headers,
                # Idle bound, not total: a generation still emitting tokens is never cut
                timeout=aiohttp.ClientTimeout(
                    total=None, sock_connect=timeout_s, sock_read=timeout_s
                ),
            )
        except aiohttp.ClientConnectorError as e:
            log_event(
                "backend_connection_failed",
                error=repr(e),
                extra={"backend_url": self.base_url, "path": path_with_query},
                level="error",
            )
            raise BackendUnavailableError(self.base_url) from e
        except asyncio.TimeoutError as e:
            raise ProxyInternalError(
                f"Timed out after {timeout_s:.0f}s waiting for {path_with_query}"
            ) from e
        except aiohttp.ClientError as e:
            raise ProxyInternalError(str(e) or type(e).__name__) from e

    # --------------------------------------------------
    # JSON helpers (health check, warmup, keepalive)
    # --------------------------------------------------
    async def get_json(self, path: str, *, timeout_s: float) -> Dict[str, Any]:
        return await self._json_call("GET", path, None, timeout_s)

    async def post_json(
        self, path: str, payload: Dict[str, Any], *, timeout_s: float
    ) -> Dict[str, Any]:
        return await self._json_call("POST", path, payload, timeout_s)

    async def _json_call(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]],
        timeout_s: float,
    ) -> Dict[str, Any]:
        try:
            async with self._get_session().request(
                method,
                self.url_for(path),
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout_s),
            ) as resp:
                body = await resp.read()
                if resp.status >= 400:
                    raise BackendResponseError(
                        resp.status, body, resp.headers.get("Content-Type")
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise ProxyInternalError(
                        f"Malformed JSON from {path}: {e}"
                    ) from e
                if not isinstance(data, dict):
                    raise ProxyInternalError(f"Unexpected JSON shape from {path}")
                return data
        except aiohttp.ClientConnectorError as e:
            raise BackendUnavailableError(self.base_url) from e
        except asyncio.TimeoutError as e:
            raise ProxyInternalError(
                f"Timed out after {timeout_s:.0f}s waiting for {path}"
            ) from e
        except aiohttp.ClientError as e:
            raise ProxyInternalError(str(e) or type(e).__name__) from e

    # --------------------------------------------------
    # Ollama API
    # --------------------------------------------------
    async def version(self, *, timeout_s: float) -> str:
        data = await self.get_json("/api/version", timeout_s=timeout_s)
        return str(data.get("version", "unknown"))

    async def list_models(self, *, timeout_s: float) -> List[str]:
        data = await self.get_json("/api/tags", timeout_s=timeout_s)
        return _model_names(data, "/api/tags")

    async def running_models(self, *, timeout_s: float) -> List[str]:
        data = await self.get_json("/api/ps", timeout_s=timeout_s)
        return _model_names(data, "/api/ps")

    async def generate(
        self, payload: Dict[str, Any], *, timeout_s: float
    ) -> Dict[str, Any]:
        return await self.post_json("/api/generate", payload, timeout_s=timeout_s)


def _model_names(data: Dict[str, Any], path: str) -> List[str]:
    """Names from a `{"models": [{"name": ...}, ...]}` listing."""
    models = data.get("models") or []
    if not isinstance(models, list):
        raise ProxyInternalError(f"Unexpected JSON shape from {path}")

    names = []
    for entry in models:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise ProxyInternalError(f"Unexpected JSON shape from {path}")
        names.append(entry["name"])
    return names
