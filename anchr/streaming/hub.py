"""Broadcast hub: fans webhook events out to connected subscribers over WebSocket."""
import asyncio
import time
from datetime import datetime
from typing import Any, Set

import orjson
import structlog
from fastapi import WebSocket, WebSocketDisconnect

from ..event_models import HubStats, WebhookEvent, isoformat, utcnow
from ..metrics import Metrics


def encode_message(kind: str, data: Any) -> str:
    """Serialize one channel frame: ``{"type": kind, "data": data}``."""
    return orjson.dumps({"type": kind, "data": data}).decode()


class SubscriberConnection:
    """
    One open subscriber socket with its own bounded outbound queue.

    A dedicated sender task drains the queue, so a slow subscriber only
    ever delays itself.
    """

    def __init__(self, websocket: WebSocket, queue_size: int, log):
        self.websocket = websocket
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._log = log
        self._sender: asyncio.Task | None = None

    def start(self):
        self._sender = asyncio.create_task(self._send_loop())

    def offer(self, message: str) -> bool:
        """Queue a message without waiting. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def _send_loop(self):
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_text(message)
            except Exception as e:
                # The receive side notices the broken socket and unregisters us
                self._log.warning("hub.send_failed", error=str(e))
                return

    async def close(self):
        if self._sender is None:
            return
        self._sender.cancel()
        try:
            await self._sender
        except asyncio.CancelledError:
            pass
        self._sender = None


class BroadcastHub:
    """
    Holds the live subscriber connections and hub statistics.

    Features:
    - Pushes current stats to every new connection
    - Answers heartbeats with a timestamped pong, to the sender only
    - Broadcasts each event to every connected subscriber, at most once,
      without waiting on any of them
    """

    def __init__(self, queue_size: int = 1000, metrics: Metrics | None = None, logger=None):
        self._connections: Set[SubscriberConnection] = set()
        self._queue_size = queue_size
        self._metrics = metrics
        self._log = logger or structlog.get_logger(component="hub")
        self._started = time.monotonic()
        self._total_events = 0
        self._last_event: datetime | None = None

    async def connect(self, websocket: WebSocket) -> SubscriberConnection:
        """
        Accept a WebSocket and register it as a subscriber.

        Args:
            websocket: Incoming WebSocket connection

        Returns:
            The registered connection
        """
        await websocket.accept()
        connection = SubscriberConnection(websocket, self._queue_size, self._log)
        self._connections.add(connection)
        connection.offer(encode_message("stats", self.get_stats().to_wire()))
        connection.start()
        self._update_gauge()
        self._log.info("hub.connected", active_connections=self.connection_count)
        return connection

    async def disconnect(self, connection: SubscriberConnection):
        """Unregister a subscriber and stop its sender."""
        if connection not in self._connections:
            return
        self._connections.discard(connection)
        await connection.close()
        self._update_gauge()
        self._log.info("hub.disconnected", active_connections=self.connection_count)

    async def serve(self, websocket: WebSocket):
        """
        Serve one subscriber for the lifetime of its WebSocket.

        Args:
            websocket: WebSocket connection
        """
        connection = await self.connect(websocket)
        try:
            while True:
                message = await websocket.receive_text()
                self.handle_message(connection, message)
        except WebSocketDisconnect as e:
            self._log.debug("hub.client_disconnected", code=e.code)
        except Exception as e:
            self._log.error("hub.stream_error", error=str(e), exc_info=True)
        finally:
            await self.disconnect(connection)

    def handle_message(self, connection: SubscriberConnection, raw: str):
        """React to a frame sent by a subscriber. Only heartbeats are understood."""
        kind = raw
        if raw.startswith("{"):
            try:
                kind = orjson.loads(raw).get("type")
            except (orjson.JSONDecodeError, AttributeError):
                kind = None

        if kind == "ping":
            connection.offer(encode_message("pong", {"timestamp": isoformat(utcnow())}))
        else:
            self._log.debug("hub.message_ignored", message=raw[:100])

    def broadcast_event(self, event: WebhookEvent) -> int:
        """
        Push an event to every connected subscriber.

        Args:
            event: Event to broadcast

        Returns:
            Number of subscribers the event was queued for
        """
        self._total_events += 1
        self._last_event = event.timestamp
        if self._metrics:
            self._metrics.events_broadcast_total.inc()

        message = encode_message("webhook", event.to_wire())
        delivered = 0
        for connection in list(self._connections):
            if connection.offer(message):
                delivered += 1
            else:
                self._log.warning("hub.message_dropped", event_id=event.id)
                if self._metrics:
                    self._metrics.messages_dropped_total.inc()

        self._log.info(
            "hub.broadcast",
            event_id=event.id,
            endpoint=event.endpoint,
            source=event.source,
            active_connections=self.connection_count,
            delivered=delivered,
        )
        return delivered

    def get_stats(self) -> HubStats:
        return HubStats(
            total_events=self._total_events,
            active_connections=self.connection_count,
            uptime=int((time.monotonic() - self._started) * 1000),
            last_event=self._last_event,
        )

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def _update_gauge(self):
        if self._metrics:
            self._metrics.subscribers_connected.set(self.connection_count)
