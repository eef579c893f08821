"""Tests for the broadcast hub and the /ws channel."""
import asyncio
import pytest
import orjson
from unittest.mock import AsyncMock
from starlette.testclient import TestClient
from anchr.config import Settings
from anchr.event_models import create_webhook_event
from anchr.metrics import Metrics
from anchr.server import create_app
from anchr.streaming.hub import BroadcastHub


def _event(endpoint="/github"):
    return create_webhook_event(
        source="198.51.100.1",
        endpoint=endpoint,
        headers={},
        body={"n": 1},
        method="POST",
        ip="198.51.100.1",
    )


def _frames(ws_mock):
    return [orjson.loads(call.args[0]) for call in ws_mock.send_text.await_args_list]


async def _drain():
    # Let sender tasks flush their queues
    for _ in range(5):
        await asyncio.sleep(0)


async def _close_all(hub):
    for connection in list(hub._connections):
        await hub.disconnect(connection)


@pytest.mark.asyncio
async def test_broadcast_with_no_subscribers_still_counts():
    hub = BroadcastHub()
    event = _event()

    delivered = hub.broadcast_event(event)

    stats = hub.get_stats()
    assert delivered == 0
    assert stats.total_events == 1
    assert stats.last_event == event.timestamp


@pytest.mark.asyncio
async def test_connect_pushes_stats_to_new_connection_only():
    hub = BroadcastHub()
    first = AsyncMock()
    second = AsyncMock()

    await hub.connect(first)
    await _drain()
    await hub.connect(second)
    await _drain()

    first_frames = _frames(first)
    second_frames = _frames(second)
    assert [f["type"] for f in first_frames] == ["stats"]
    assert first_frames[0]["data"]["activeConnections"] == 1
    assert [f["type"] for f in second_frames] == ["stats"]
    assert second_frames[0]["data"]["activeConnections"] == 2
    first.accept.assert_awaited_once()


@pytest.mark.asyncio
async def test_broadcast_reaches_every_connection():
    hub = BroadcastHub()
    sockets = [AsyncMock() for _ in range(3)]
    for ws in sockets:
        await hub.connect(ws)

    event = _event()
    delivered = hub.broadcast_event(event)
    await _drain()

    assert delivered == 3
    for ws in sockets:
        webhook_frames = [f for f in _frames(ws) if f["type"] == "webhook"]
        assert len(webhook_frames) == 1
        assert webhook_frames[0]["data"]["id"] == event.id
        assert webhook_frames[0]["data"]["endpoint"] == "/github"


@pytest.mark.asyncio
async def test_disconnected_subscriber_misses_events():
    """No replay: an event broadcast while away is never delivered."""
    hub = BroadcastHub()
    ws = AsyncMock()
    connection = await hub.connect(ws)
    await _drain()
    await hub.disconnect(connection)

    hub.broadcast_event(_event())
    await _drain()

    assert hub.connection_count == 0
    assert [f["type"] for f in _frames(ws)] == ["stats"]


@pytest.mark.asyncio
async def test_ping_answered_to_sender_only():
    hub = BroadcastHub()
    pinger = AsyncMock()
    bystander = AsyncMock()
    connection = await hub.connect(pinger)
    await hub.connect(bystander)

    hub.handle_message(connection, '{"type": "ping"}')
    hub.handle_message(connection, "ping")
    await _drain()

    pongs = [f for f in _frames(pinger) if f["type"] == "pong"]
    assert len(pongs) == 2
    assert pongs[0]["data"]["timestamp"].endswith("Z")
    assert all(f["type"] != "pong" for f in _frames(bystander))


@pytest.mark.asyncio
async def test_full_queue_drops_for_that_subscriber_only():
    metrics = Metrics()
    hub = BroadcastHub(queue_size=1, metrics=metrics)
    stuck = AsyncMock()
    blocked = asyncio.Event()

    async def never_returns(message):
        await blocked.wait()

    stuck.send_text.side_effect = never_returns
    healthy = AsyncMock()

    await hub.connect(stuck)
    await hub.connect(healthy)
    await _drain()

    # stuck's sender holds the stats frame; one more fits in its queue
    assert hub.broadcast_event(_event()) == 2
    await _drain()
    assert hub.broadcast_event(_event()) == 1
    await _drain()

    assert len([f for f in _frames(healthy) if f["type"] == "webhook"]) == 2
    assert metrics.registry.get_sample_value("anchr_hub_messages_dropped_total") == 1
    blocked.set()
    await _close_all(hub)


@pytest.mark.asyncio
async def test_failed_send_does_not_affect_others():
    hub = BroadcastHub()
    broken = AsyncMock()
    broken.send_text.side_effect = RuntimeError("socket gone")
    healthy = AsyncMock()
    await hub.connect(broken)
    await hub.connect(healthy)

    hub.broadcast_event(_event())
    await _drain()

    assert any(f["type"] == "webhook" for f in _frames(healthy))


def test_uptime_never_decreases():
    hub = BroadcastHub()
    readings = [hub.get_stats().uptime for _ in range(50)]

    assert readings == sorted(readings)
    assert readings[0] >= 0


def test_websocket_channel_end_to_end():
    """Subscriber gets stats on connect, pong on ping and each webhook."""
    app = create_app(Settings())
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            stats = ws.receive_json()
            assert stats["type"] == "stats"
            assert stats["data"]["activeConnections"] == 1

            ws.send_json({"type": "ping"})
            pong = ws.receive_json()
            assert pong["type"] == "pong"
            assert "timestamp" in pong["data"]

            response = client.post("/github", json={"action": "push"})
            assert response.status_code == 200

            message = ws.receive_json()
            assert message["type"] == "webhook"
            assert message["data"]["id"] == response.json()["eventId"]
            assert message["data"]["endpoint"] == "/github"
            assert message["data"]["body"] == {"action": "push"}

        stats = client.get("/stats").json()
        assert stats["totalEvents"] == 1
