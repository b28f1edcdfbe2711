# tests/test_gateway_proxy.py

"""End-to-end tests: httpx client → gateway app → fake Ollama."""

import json

import httpx
import pytest
from aiohttp.test_utils import unused_port

from conftest import AUTH_HEADERS, make_config
from gateway.gateway_server import PROXIED_ROUTES, create_app
from gateway.payload_augmenter import DEFAULT_INFERENCE_OPTIONS


def _concrete(path: str) -> str:
    return path.replace("{digest}", "sha256-abc")


# --------------------------------------------------
# Authentication gate
# --------------------------------------------------
@pytest.mark.parametrize("method,path", PROXIED_ROUTES)
async def test_missing_token_rejected_without_backend_call(client, fake_backend, method, path):
    resp = await client.request(method, _concrete(path))
    assert resp.status_code == 401
    if method != "HEAD":
        assert resp.json() == {"error": "Unauthorized"}
    assert fake_backend.requests == []


@pytest.mark.parametrize(
    "header",
    ["Bearer wrong", "bearer test-token", "Bearer  test-token", "test-token", "Basic dGVzdA=="],
)
async def test_wrong_token_rejected(client, fake_backend, header):
    resp = await client.post(
        "/api/generate", json={"prompt": "hi"}, headers={"Authorization": header}
    )
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
    assert fake_backend.requests == []


async def test_health_requires_no_token(client):
    resp = await client.get("/health")
    assert resp.status_code == 200


# --------------------------------------------------
# Generate / chat augmentation
# --------------------------------------------------
async def test_generate_scenario(client, fake_backend):
    resp = await client.post(
        "/api/generate",
        json={"model": "mistral:7b", "prompt": "hi"},
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json() == {"model": "mistral:7b", "response": " Hello! ", "done": True}

    forwarded = fake_backend.requests_to("/api/generate")[0]
    payload = forwarded.json()
    assert payload["stream"] is False
    assert payload["options"] == DEFAULT_INFERENCE_OPTIONS
    assert payload["prompt"] == "hi"
    assert forwarded.content_type == "application/json"


async def test_chat_caller_temperature_wins(client, fake_backend):
    resp = await client.post(
        "/api/chat",
        json={
            "model": "mistral:7b",
            "messages": [{"role": "user", "content": "hi"}],
            "options": {"temperature": 0.05},
        },
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 200

    options = fake_backend.requests_to("/api/chat")[0].json()["options"]
    assert options["temperature"] == 0.05
    assert options["top_k"] == DEFAULT_INFERENCE_OPTIONS["top_k"]
    assert options["num_ctx"] == DEFAULT_INFERENCE_OPTIONS["num_ctx"]


async def test_streaming_generate_relays_ndjson(client, fake_backend):
    resp = await client.post(
        "/api/generate",
        json={"model": "mistral:7b", "prompt": "hi", "stream": True},
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in resp.text.splitlines()]
    assert [line["response"] for line in lines] == ["Hel", "lo"]
    assert fake_backend.requests_to("/api/generate")[0].json()["stream"] is True


async def test_malformed_generate_body_is_400(client, fake_backend):
    resp = await client.post(
        "/api/generate",
        content=b"{nope",
        headers={**AUTH_HEADERS, "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid JSON body"
    assert fake_backend.requests == []


# --------------------------------------------------
# Pass-through routes
# --------------------------------------------------
async def test_pull_body_is_byte_identical(client, fake_backend):
    raw = b'{ "model" : "mistral:7b",   "insecure":false }'
    resp = await client.post(
        "/api/pull",
        content=raw,
        headers={**AUTH_HEADERS, "Content-Type": "application/json"},
    )
    assert resp.status_code == 200
    assert fake_backend.requests_to("/api/pull")[0].body == raw


async def test_query_string_preserved(client, fake_backend):
    resp = await client.get("/api/tags?verbose=1&x=y", headers=AUTH_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["models"][0]["name"] == "mistral:7b"

    forwarded = fake_backend.requests_to("/api/tags")[0]
    assert forwarded.method == "GET"
    assert forwarded.query_string == "verbose=1&x=y"
    assert forwarded.body == b""


async def test_delete_forwards_body(client, fake_backend):
    resp = await client.request(
        "DELETE", "/api/delete", json={"model": "old:1b"}, headers=AUTH_HEADERS
    )
    assert resp.status_code == 200
    forwarded = fake_backend.requests_to("/api/delete")[0]
    assert forwarded.method == "DELETE"
    assert forwarded.json() == {"model": "old:1b"}


@pytest.mark.parametrize("path", ["/api/version", "/api/tags", "/api/ps"])
async def test_head_on_get_routes_is_forwarded(client, fake_backend, path):
    resp = await client.head(path, headers=AUTH_HEADERS)
    assert resp.status_code == 200
    assert resp.content == b""

    forwarded = fake_backend.requests_to(path)[0]
    assert forwarded.method == "HEAD"
    assert forwarded.body == b""


async def test_head_on_get_route_requires_token(client, fake_backend):
    resp = await client.head("/api/tags")
    assert resp.status_code == 401
    assert fake_backend.requests == []


async def test_blob_head_and_upload(client, fake_backend):
    head = await client.head("/api/blobs/sha256-abc", headers=AUTH_HEADERS)
    assert head.status_code == 200

    upload = await client.post(
        "/api/blobs/sha256-abc", content=b"\x00\x01layer-bytes", headers=AUTH_HEADERS
    )
    assert upload.status_code == 201

    uploads = [r for r in fake_backend.requests_to("/api/blobs/sha256-abc") if r.method == "POST"]
    assert uploads[0].body == b"\x00\x01layer-bytes"


async def test_oversized_body_rejected(fake_backend):
    app = create_app(make_config(BACKEND_URL=fake_backend.base_url, MAX_BODY_BYTES=16))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as c:
        resp = await c.post("/api/pull", json={"model": "x" * 64}, headers=AUTH_HEADERS)
    await app.state.backend.close()

    assert resp.status_code == 413
    assert fake_backend.requests == []


# --------------------------------------------------
# Failure mapping
# --------------------------------------------------
async def test_backend_error_status_and_body_passed_through(client):
    resp = await client.post("/api/show", json={"model": "ghost"}, headers=AUTH_HEADERS)
    assert resp.status_code == 404
    assert resp.json() == {"error": "model 'ghost' not found"}


async def test_backend_error_on_streaming_request(client, fake_backend):
    fake_backend.generate_status = 500
    resp = await client.post(
        "/api/generate", json={"prompt": "hi", "stream": True}, headers=AUTH_HEADERS
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": "model runner crashed"}


@pytest.mark.parametrize(
    "method,path",
    [("GET", "/api/tags"), ("POST", "/api/generate"), ("POST", "/api/pull"), ("GET", "/api/ps")],
)
async def test_unreachable_backend_is_503(method, path):
    dead_url = f"http://127.0.0.1:{unused_port()}"
    app = create_app(make_config(BACKEND_URL=dead_url))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as c:
        kwargs = {"json": {"model": "mistral:7b"}} if method == "POST" else {}
        resp = await c.request(method, path, headers=AUTH_HEADERS, **kwargs)
    await app.state.backend.close()

    assert resp.status_code == 503
    body = resp.json()
    assert body["error"] == "Ollama service unavailable"
    assert dead_url in body["message"]


# --------------------------------------------------
# Health
# --------------------------------------------------
async def test_health_reports_model_loaded(client):
    resp = await client.get("/health")
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["ollama_version"] == "0.3.12"
    assert body["model_loaded"] is True
    assert body["model_name"] == "mistral:7b"
    assert body["warmup_state"] == "STARTING"


async def test_health_model_not_loaded(client, fake_backend):
    fake_backend.running = [{"name": "llama3:8b"}]
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["model_loaded"] is False


@pytest.mark.parametrize(
    "running",
    [["mistral:7b"], [{"name": None}], {"name": "mistral:7b"}],
)
async def test_health_malformed_running_models_is_503(client, fake_backend, running):
    fake_backend.running = running
    resp = await client.get("/health")
    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "unhealthy"
    assert "Unexpected JSON shape from /api/ps" in body["error"]


async def test_health_backend_down_is_503():
    app = create_app(make_config(BACKEND_URL=f"http://127.0.0.1:{unused_port()}"))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as c:
        resp = await c.get("/health")
    await app.state.backend.close()

    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "unhealthy"
    assert body["error"]
    assert "timestamp" in body


async def test_backend_timeout_is_500(fake_backend):
    fake_backend.generate_delay_s = 1.0
    app = create_app(make_config(BACKEND_URL=fake_backend.base_url, REQUEST_TIMEOUT_MS=100))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as c:
        resp = await c.post("/api/generate", json={"prompt": "hi"}, headers=AUTH_HEADERS)
    await app.state.backend.close()

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Internal server error"
    assert "Timed out" in body["message"]
