# tests/conftest.py

"""Shared fixtures: a fake Ollama server and an in-process gateway client."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

import httpx
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from common.config import ProxyConfig
from gateway.gateway_server import create_app


TEST_TOKEN = "test-token"
AUTH_HEADERS = {"Authorization": f"Bearer {TEST_TOKEN}"}


def make_config(**overrides) -> ProxyConfig:
    settings = dict(
        BEARER_TOKEN=TEST_TOKEN,
        WARMUP_ENABLED=False,
        WARMUP_DELAY_MS=0,
        HEALTH_TIMEOUT_MS=2_000,
        REQUEST_TIMEOUT_MS=5_000,
        WARMUP_TIMEOUT_MS=5_000,
        KEEPALIVE_TIMEOUT_MS=2_000,
    )
    settings.update(overrides)
    return ProxyConfig(**settings)


@dataclass
class RecordedRequest:
    method: str
    path: str
    query_string: str
    body: bytes
    content_type: Optional[str]

    def json(self):
        return json.loads(self.body)


class FakeOllama:
    """
    Minimal stand-in for the Ollama HTTP API. Records every request it
    receives so tests can inspect exactly what the gateway forwarded.
    """

    def __init__(self):
        self.requests: list[RecordedRequest] = []
        self.models = [{"name": "mistral:7b"}, {"name": "llama3:8b"}]
        self.running = [{"name": "mistral:7b"}]
        self.generate_status = 200
        self.generate_delay_s = 0.0
        self.stream_gate: Optional[asyncio.Event] = None
        self.stream_tokens = ["Hel", "lo"]
        self.stream_interval_s = 0.0
        self.base_url = ""

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app

    def requests_to(self, path: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.path == path]

    async def handle(self, request: web.Request) -> web.StreamResponse:
        body = await request.read()
        self.requests.append(
            RecordedRequest(
                method=request.method,
                path=request.path,
                query_string=request.query_string,
                body=body,
                content_type=request.headers.get("Content-Type"),
            )
        )

        path = request.path
        if path == "/api/version":
            return web.json_response({"version": "0.3.12"})
        if path == "/api/tags":
            return web.json_response({"models": self.models})
        if path == "/api/ps":
            return web.json_response({"models": self.running})
        if path in ("/api/generate", "/api/chat"):
            return await self._generate(request, body)
        if path.startswith("/api/blobs/"):
            return web.Response(status=200 if request.method == "HEAD" else 201)
        if path == "/api/show":
            return web.json_response({"error": "model 'ghost' not found"}, status=404)
        return web.json_response({"status": "success"})

    async def _generate(self, request: web.Request, body: bytes) -> web.StreamResponse:
        if self.generate_status != 200:
            return web.json_response(
                {"error": "model runner crashed"}, status=self.generate_status
            )

        payload = json.loads(body) if body else {}
        if self.generate_delay_s:
            await asyncio.sleep(self.generate_delay_s)
        if payload.get("stream") is True:
            resp = web.StreamResponse(headers={"Content-Type": "application/x-ndjson"})
            await resp.prepare(request)
            last = len(self.stream_tokens) - 1
            for i, token in enumerate(self.stream_tokens):
                if i and self.stream_interval_s:
                    await asyncio.sleep(self.stream_interval_s)
                line = json.dumps({"response": token, "done": i == last}, separators=(",", ":"))
                await resp.write(line.encode() + b"\n")
                if i == 0 and self.stream_gate is not None:
                    await self.stream_gate.wait()
            await resp.write_eof()
            return resp

        return web.json_response(
            {"model": payload.get("model"), "response": " Hello! ", "done": True}
        )


@pytest.fixture
async def fake_backend():
    fake = FakeOllama()
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
async def proxy_app(fake_backend):
    app = create_app(make_config(BACKEND_URL=fake_backend.base_url))
    yield app
    await app.state.backend.close()


@pytest.fixture
async def client(proxy_app):
    transport = httpx.ASGITransport(app=proxy_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as c:
        yield c
