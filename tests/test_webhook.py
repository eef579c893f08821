"""Tests for webhook ingestion."""
import asyncio
import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from anchr.api.webhook_router import WebhookReceiver, create_webhook_router, parse_body
from anchr.config import Settings
from anchr.event_models import REDACTED
from anchr.server import create_app


def _app_with_capture():
    app = create_app(Settings())
    events = []
    app.state.receiver.set_event_callback(events.append)
    return app, events


@pytest.mark.asyncio
async def test_webhook_acknowledged_and_captured():
    """A POST on any path is acknowledged and turned into an event."""
    app, events = _app_with_capture()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/github",
            json={"action": "opened", "number": 7},
            headers={
                "Authorization": "Bearer secret",
                "X-GitHub-Event": "pull_request",
                "User-Agent": "GitHub-Hookshot/123",
            },
        )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["eventId"]
    assert data["timestamp"].endswith("Z")

    assert len(events) == 1
    event = events[0]
    assert event.id == data["eventId"]
    assert event.endpoint == "/github"
    assert event.method == "POST"
    assert event.body == {"action": "opened", "number": 7}
    assert event.headers["authorization"] == REDACTED
    assert event.headers["x-github-event"] == "pull_request"
    assert event.user_agent == "GitHub-Hookshot/123"


@pytest.mark.asyncio
async def test_nested_paths_are_endpoints():
    app, events = _app_with_capture()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/api/users/42", json={})

    assert response.status_code == 200
    assert events[0].endpoint == "/api/users/42"


@pytest.mark.asyncio
async def test_forwarded_for_sets_source_and_ip():
    app, events = _app_with_capture()
    transport = ASGITransport(app=app, client=("10.0.0.5", 5000))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/stripe", json={}, headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
        await client.post("/stripe", json={})

    assert events[0].source == "198.51.100.1, 10.0.0.1"
    assert events[0].ip == "198.51.100.1"
    assert events[1].source == "10.0.0.5"
    assert events[1].ip == "10.0.0.5"


@pytest.mark.asyncio
async def test_form_and_text_bodies():
    app, events = _app_with_capture()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/form", data={"a": "1", "b": "2"})
        await client.post("/text", content=b"hello", headers={"Content-Type": "text/plain"})
        await client.post("/empty")

    assert events[0].body == {"a": "1", "b": "2"}
    assert events[1].body == "hello"
    assert events[2].body == {}


@pytest.mark.asyncio
async def test_malformed_json_is_internal_error_without_broadcast():
    """Construction failures answer 500 and never reach the hub."""
    app, events = _app_with_capture()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/github",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}
    assert events == []


@pytest.mark.asyncio
async def test_non_post_methods_rejected():
    app, events = _app_with_capture()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        get_response = await client.get("/github")
        put_response = await client.put("/github", json={})
        delete_response = await client.delete("/anything/else")

    for response in (get_response, put_response, delete_response):
        assert response.status_code == 405
        assert response.json()["error"] == "Method not allowed"
    assert events == []


@pytest.mark.asyncio
async def test_webhook_reaches_hub():
    """Without a capture callback, events are broadcast by the hub."""
    app = create_app(Settings())
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/github", json={"n": 1})
        await client.post("/stripe", json={"n": 2})
        stats = (await client.get("/stats")).json()

    assert stats["totalEvents"] == 2
    assert stats["activeConnections"] == 0
    assert stats["lastEvent"] is not None


@pytest.mark.asyncio
async def test_async_callback_is_awaited():
    app = create_app(Settings())
    seen = []

    async def callback(event):
        await asyncio.sleep(0)
        seen.append(event.endpoint)

    app.state.receiver.set_event_callback(callback)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/async", json={})

    assert seen == ["/async"]


@pytest.mark.asyncio
async def test_response_sent_before_callback():
    """The sender's acknowledgment goes out before the event is handed on."""
    order = []
    receiver = WebhookReceiver()
    receiver.set_event_callback(lambda event: order.append("callback"))
    app = FastAPI()
    app.include_router(create_webhook_router(receiver))

    body = b'{"action": "push"}'
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/github",
        "raw_path": b"/github",
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"host", b"test"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ],
        "client": ("127.0.0.1", 5000),
        "server": ("test", 80),
    }
    pending = [{"type": "http.request", "body": body, "more_body": False}]
    never = asyncio.Event()

    async def receive():
        if pending:
            return pending.pop(0)
        await never.wait()

    async def send(message):
        if message["type"] == "http.response.body" and "response" not in order:
            order.append("response")

    await app(scope, receive, send)

    assert order == ["response", "callback"]


@pytest.mark.asyncio
async def test_body_size_recorded_from_parsed_bytes():
    app, events = _app_with_capture()
    content = b'{"action": "push", "ref": "main"}'
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/github", content=content, headers={"Content-Type": "application/json"})

    registry = app.state.metrics.registry
    assert registry.get_sample_value("anchr_webhook_body_bytes_sum") == len(content)
    assert registry.get_sample_value("anchr_webhook_body_bytes_count") == 1
    assert events[0].body == {"action": "push", "ref": "main"}


def test_parse_body_by_content_type():
    assert parse_body(b"", "application/json") == {}
    assert parse_body(b'{"a": 1}', "application/vnd.github+json; charset=utf-8") == {"a": 1}
    assert parse_body(b"a=1&a=2&b=", "application/x-www-form-urlencoded") == {"a": ["1", "2"], "b": ""}
    assert parse_body(b"plain", "text/plain") == "plain"


@pytest.mark.asyncio
async def test_percent_encoded_path_is_decoded_endpoint():
    app, events = _app_with_capture()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/caf%C3%A9", json={})

    assert response.status_code == 200
    assert events[0].endpoint == "/café"
