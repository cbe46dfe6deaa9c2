from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Any

import httpx
import pytest
from conftest import FakeIdentity, make_redis
from fastapi.testclient import TestClient
from itsdangerous import TimestampSigner
from starlette.middleware.sessions import SessionMiddleware

from copilot_gateway import server as server_mod
from copilot_gateway.config import Settings
from copilot_gateway.graph_copilot import CopilotBridge

GATEWAY_TOKEN = "gw-token"
AUTH = {"Authorization": f"Bearer {GATEWAY_TOKEN}"}


class _FakeGraph:
    """MockTransport handler standing in for the Graph Copilot conversation API."""

    def __init__(self) -> None:
        self.replies = ["Hi", "Hi there", "Hi there!"]
        self.create_status = 201
        self.calls: list[str] = []
        self.tokens: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        self.tokens.append(request.headers.get("authorization", ""))
        if path.endswith("/copilot/conversations"):
            if self.create_status >= 400:
                return httpx.Response(
                    self.create_status,
                    json={"error": {"code": "Forbidden", "message": "No Copilot license"}},
                    headers={"request-id": "graph-req-9"},
                )
            return httpx.Response(self.create_status, json={"id": "conv-1"})

        prompt = json.loads(request.content)["message"]["text"]
        if path.endswith("/chatOverStream"):
            body = "".join(
                "data: " + json.dumps({"messages": [{"text": prompt}, {"text": r}]}) + "\n\n" for r in self.replies
            )
            return httpx.Response(
                200,
                content=body.encode(),
                headers={"content-type": "text/event-stream", "request-id": "graph-req-stream"},
            )
        if path.endswith("/chat"):
            return httpx.Response(
                200,
                json={"messages": [{"text": prompt}, {"text": self.replies[-1]}]},
                headers={"request-id": "graph-req-chat"},
            )
        return httpx.Response(404)


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = dict(
        tenant_id="contoso",
        client_id="client-1",
        client_secret="secret-1",
        bearer_token=GATEWAY_TOKEN,
        redis_url="redis://unused:6379/0",
        session_secret=None,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def graph():
    return _FakeGraph()


@pytest.fixture
def make_client(monkeypatch, graph):
    clients: list[TestClient] = []

    def _make(**overrides: Any) -> TestClient:
        bridge = CopilotBridge(
            base_url="https://graph.test/beta",
            time_zone="UTC",
            country_or_region="US",
            client=httpx.AsyncClient(transport=httpx.MockTransport(graph)),
        )
        services = server_mod.build_services(
            _settings(**overrides),
            redis=make_redis(),
            identity=FakeIdentity(),
            bridge=bridge,
        )
        monkeypatch.setattr(server_mod, "_SERVICES", services)
        app = server_mod.app
        if services.settings.session_secret:
            app = SessionMiddleware(app, secret_key=services.settings.session_secret)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def _onboard(client: TestClient) -> str:
    started = client.post("/auth/device/start").json()
    assert started["status"] == "pending"
    for _ in range(200):
        info = client.get(f"/auth/device/status/{started['txId']}").json()
        if info["status"] != "pending":
            break
        time.sleep(0.01)
    assert info["status"] == "complete"
    return info["user_key"]


def _sse_data(text: str) -> list[Any]:
    out: list[Any] = []
    for block in text.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: ") :]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


def _chat(client: TestClient, key: str | None, *, stream: bool = False) -> httpx.Response:
    headers = dict(AUTH)
    if key is not None:
        headers["X-User-Key"] = key
    return client.post(
        "/v1/chat/completions",
        headers=headers,
        json={"model": "fast", "stream": stream, "messages": [{"role": "user", "content": "hello"}]},
    )


def test_models_requires_gateway_token(client):
    assert client.get("/v1/models").status_code == 401
    assert client.get("/v1/models", headers={"Authorization": "Bearer nope"}).status_code == 401

    resp = client.get("/v1/models", headers=AUTH)
    assert resp.status_code == 200
    assert "gpt-5.2-fast" in [m["id"] for m in resp.json()["data"]]


def test_request_id_is_echoed_or_generated(client):
    assert client.get("/healthz", headers={"X-Request-Id": "abc-123"}).headers["x-request-id"] == "abc-123"

    generated = client.get("/healthz", headers={"X-Request-Id": "x" * 201}).headers["x-request-id"]
    assert generated != "x" * 201
    assert len(generated) == 36


def test_healthz_reports_config_presence(make_client):
    client = make_client(client_secret=None)

    body = client.get("/healthz").json()

    assert body["ok"] is True
    assert body["redis"] is True
    assert body["config"]["has_tenant_id"] is True
    assert body["config"]["has_client_secret"] is False
    assert body["config"]["missing"] == ["AZURE_CLIENT_SECRET"]


def test_device_start_needs_identity_config(make_client):
    client = make_client(tenant_id=None)

    resp = client.post("/auth/device/start")

    assert resp.status_code == 503
    assert "AZURE_TENANT_ID" in resp.json()["error"]["message"]


def test_unknown_device_transaction(client):
    resp = client.get("/auth/device/status/not-a-tx")

    assert resp.status_code == 404
    assert resp.json()["error"]["message"] == "txId not found"


def test_chat_without_user_context(client):
    resp = _chat(client, None)

    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "No user context. Use X-User-Key."


def test_chat_with_unknown_key(client):
    resp = _chat(client, "z" * 32)

    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Invalid X-User-Key or expired."


def test_onboard_then_stream_chat(client, graph):
    key = _onboard(client)

    resp = _chat(client, key, stream=True)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = _sse_data(resp.text)
    deltas = [f["choices"][0]["delta"].get("content") for f in frames[:-2]]
    assert deltas == ["Hi", " there", "!"]
    assert frames[-2]["choices"][0]["finish_reason"] == "stop"
    assert frames[-1] == "[DONE]"
    assert graph.calls == ["/beta/copilot/conversations", "/beta/copilot/conversations/conv-1/chatOverStream"]
    assert set(graph.tokens) == {"Bearer graph-access-1"}


def test_non_stream_chat(client):
    key = _onboard(client)

    resp = _chat(client, key)

    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == "fast"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hi there!"}


def test_stream_samples_are_visible_in_debug_events(client):
    key = _onboard(client)
    _chat(client, key, stream=True)

    assert client.get("/debug/last-events").status_code == 401
    body = client.get("/debug/last-events", headers=AUTH).json()
    assert body["count"] == 3
    assert body["events"][0]["conversationId"] == "conv-1"
    assert "Hi there!" in body["events"][0]["sample"]


def test_upstream_failure_carries_status_and_request_id(client, graph):
    key = _onboard(client)
    graph.create_status = 403

    resp = _chat(client, key, stream=True)

    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["upstream_status"] == 403
    assert error["upstream_request_id"] == "graph-req-9"
    assert error["type"] == "upstream_error"


def test_rotate_invalidates_old_key(client):
    old = _onboard(client)

    rotated = client.post("/keys/me/rotate", headers={"X-User-Key": old})
    assert rotated.status_code == 200
    new = rotated.json()["user_key"]
    assert new != old

    assert _chat(client, old).status_code == 401
    assert _chat(client, new).status_code == 200
    assert client.post("/keys/me/rotate", headers={"X-User-Key": old}).status_code == 404


def test_inspect_label_and_revoke_key(client):
    key = _onboard(client)
    headers = {"X-User-Key": key}

    me = client.get("/keys/me", headers=headers).json()
    assert me["account_id"] == "uid-1.tenant-1"
    assert me["username"] == "alice@contoso.com"
    assert key not in me["key"]

    assert client.patch("/keys/me", headers=headers, json={"label": "ci"}).json()["label"] == "ci"

    assert client.delete("/keys/me", headers=headers).json()["revoked"] is True
    assert client.get("/keys/me", headers=headers).status_code == 404
    assert client.delete("/keys/me", headers=headers).status_code == 404
    assert _chat(client, key).status_code == 401


def test_key_endpoints_reject_missing_key(client):
    assert client.get("/keys/me").status_code == 401
    assert client.post("/keys/me/rotate", headers={"X-User-Key": "tiny"}).status_code == 401


def test_admin_lists_masked_keys(client):
    key = _onboard(client)

    assert client.get("/admin/keys").status_code == 401
    body = client.get("/admin/keys", headers=AUTH).json()

    assert body["count"] == 1
    assert body["keys"][0]["account_id"] == "uid-1.tenant-1"
    assert key not in json.dumps(body)


def _session_data(client: TestClient, secret: str) -> dict[str, Any]:
    raw = client.cookies.get("session")
    if not raw:
        return {}
    return json.loads(base64.b64decode(TimestampSigner(secret).unsign(raw.encode())))


def test_completed_sign_in_binds_browser_session(make_client):
    client = make_client(session_secret="test-session-secret")

    _onboard(client)

    assert _session_data(client, "test-session-secret") == {"account_id": "uid-1.tenant-1"}
    assert _chat(client, None).status_code == 200

    assert client.post("/auth/logout").json() == {"ok": True}
    after = _chat(client, None)
    assert after.status_code == 401
    assert after.json()["error"]["message"] == "No user context. Use X-User-Key."


def test_graph_request_id_reaches_response_logs(client, caplog):
    key = _onboard(client)

    with caplog.at_level("INFO", logger="uvicorn.error"):
        _chat(client, key)
        _chat(client, key, stream=True)

    messages = [r.getMessage() for r in caplog.records]
    assert any("response status=200" in m and "graph_request_id=graph-req-chat" in m for m in messages)
    assert any("stream.start" in m and "graph_request_id=graph-req-stream" in m for m in messages)
    assert any("stream.end" in m and "graph_request_id=graph-req-stream" in m for m in messages)


class _EndlessUpstream:
    """Open upstream stream that keeps producing events until closed."""

    conversation_id = "conv-live"
    correlation_id = "graph-req-live"

    def __init__(self) -> None:
        self.reads = 0
        self.closed = False

    async def aiter_bytes(self):
        while True:
            self.reads += 1
            yield f'data: {{"messages": [{{"text": "tick {self.reads}"}}]}}\n\n'.encode()
            await asyncio.sleep(0.005)

    async def aclose(self) -> None:
        self.closed = True


class _EndlessBridge:
    def __init__(self) -> None:
        self.upstream = _EndlessUpstream()

    async def chat_stream(self, token: str, prompt: str, *, request_id: str | None = None) -> _EndlessUpstream:
        return self.upstream


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream(monkeypatch):
    bridge = _EndlessBridge()
    services = server_mod.build_services(
        _settings(),
        redis=make_redis(),
        identity=FakeIdentity(),
        bridge=bridge,  # type: ignore[arg-type]
    )
    monkeypatch.setattr(server_mod, "_SERVICES", services)
    await services.store.save_token_cache("acct-1", {"access_token": "graph-access-1"})
    key = await services.store.mint("acct-1")

    body = json.dumps({"model": "auto", "stream": True, "messages": [{"role": "user", "content": "hi"}]}).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/v1/chat/completions",
        "raw_path": b"/v1/chat/completions",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
            (b"authorization", f"Bearer {GATEWAY_TOKEN}".encode()),
            (b"x-user-key", key.encode()),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    body_sent = False

    async def receive() -> dict[str, Any]:
        nonlocal body_sent
        if not body_sent:
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        await asyncio.sleep(0.05)
        return {"type": "http.disconnect"}

    sent: list[dict[str, Any]] = []

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    await asyncio.wait_for(server_mod.app(scope, receive, send), timeout=5)

    upstream = bridge.upstream
    assert sent[0]["type"] == "http.response.start" and sent[0]["status"] == 200
    assert upstream.reads > 0
    assert upstream.closed is True
    reads_at_close = upstream.reads
    await asyncio.sleep(0.05)
    assert upstream.reads == reads_at_close
