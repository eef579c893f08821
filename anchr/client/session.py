"""Subscriber session: one hub connection, its reconnect policy and status."""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union
from urllib.parse import urlsplit, urlunsplit

import orjson
import structlog
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import SubscriberConfig
from ..event_models import ConnectionStatus, SessionState, WebhookEvent, utcnow

TERMINAL_ERROR = "Max reconnection attempts reached"

# Failures that count as "could not reach the hub"
CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)

EventCallback = Callable[[WebhookEvent], Union[None, Awaitable[None]]]
StatusCallback = Callable[[ConnectionStatus], None]
Connector = Callable[[str], Awaitable[Any]]


class SessionConnectError(Exception):
    """The first attempt to reach the hub failed."""


def to_websocket_url(server_url: str) -> str:
    """
    Normalize a hub address to its WebSocket URL.

    ``http://host:3000`` becomes ``ws://host:3000/ws``; ws(s) URLs with an
    explicit path are kept as they are.
    """
    parts = urlsplit(server_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    if scheme not in ("ws", "wss") or not parts.netloc:
        raise ValueError(f"unsupported hub address: {server_url!r}")
    path = parts.path if parts.path not in ("", "/") else "/ws"
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class SubscriberSession:
    """
    Owns the connection to the hub.

    States: disconnected -> connecting -> connected -> disconnected (drop)
    -> reconnecting -> connected | failed. ``failed`` is terminal: after
    ``max_retries`` attempts, spaced ``reconnect_interval`` ms apart, the
    session stops trying.

    Every received event is handed to the event callback. Events wait in a
    bounded queue and are dropped, with a warning, when it is full.
    """

    def __init__(
        self,
        config: SubscriberConfig,
        connector: Connector | None = None,
        logger=None,
    ):
        """
        Args:
            config: Session settings
            connector: Coroutine function opening a WebSocket to a URL
                (defaults to ``websockets.connect``)
            logger: Optional bound logger
        """
        self.config = config
        self.url = to_websocket_url(config.server_url)
        self._connector = connector or self._open_websocket
        self._log = logger or structlog.get_logger(component="session")

        self._status = ConnectionStatus()
        self._event_callback: EventCallback | None = None
        self._status_callback: StatusCallback | None = None

        self._ws = None
        self._closing = False
        self._run_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None
        self._events: asyncio.Queue[WebhookEvent] | None = None
        self._pong = asyncio.Event()
        self.last_pong: str | None = None

    def set_event_callback(self, callback: EventCallback):
        self._event_callback = callback

    def set_status_callback(self, callback: StatusCallback):
        self._status_callback = callback

    @property
    def status(self) -> ConnectionStatus:
        return self._status.model_copy()

    def is_connected(self) -> bool:
        return self._status.connected

    async def connect(self):
        """
        Open the connection and start receiving.

        Raises:
            SessionConnectError: the first attempt failed; nothing is retried
        """
        if self._run_task is not None and not self._run_task.done():
            return

        self._closing = False
        self._status.state = SessionState.CONNECTING
        self._log.info("session.connecting", url=self.url)

        try:
            ws = await self._connector(self.url)
        except CONNECT_ERRORS as e:
            message = _error_text(e)
            self._status.connected = False
            self._status.state = SessionState.DISCONNECTED
            self._status.error = message
            self._status.reconnect_attempts += 1
            self._log.error("session.connect_failed", url=self.url, error=message)
            self._notify()
            raise SessionConnectError(message) from e

        if self._consumer_task is None or self._consumer_task.done():
            self._events = asyncio.Queue(maxsize=self.config.event_queue_size)
            self._consumer_task = asyncio.create_task(self._consume_events())
        self._on_connected(ws)
        self._run_task = asyncio.create_task(self._run(ws))

    async def disconnect(self):
        """Close the connection on purpose. Never triggers reconnection."""
        self._closing = True
        ws, self._ws = self._ws, None
        active = ws is not None or self._run_task is not None

        if ws is not None:
            await ws.close()
        for task in (self._run_task, self._consumer_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._run_task = None
        self._consumer_task = None

        if active:
            self._status.connected = False
            if self._status.state != SessionState.FAILED:
                self._status.state = SessionState.DISCONNECTED
            self._log.info("session.disconnected")
            self._notify()

    async def wait_closed(self):
        """Return once the session stopped for good (failed or disconnected)."""
        if self._run_task is not None:
            await asyncio.wait({self._run_task})

    async def ping(self) -> bool:
        """Send a heartbeat. Does nothing unless connected."""
        if not self._status.connected or self._ws is None:
            return False
        self._pong.clear()
        try:
            await self._ws.send(orjson.dumps({"type": "ping"}).decode())
        except ConnectionClosed:
            return False
        return True

    async def wait_for_pong(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._pong.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _open_websocket(self, url: str):
        return await websockets.connect(url, open_timeout=self.config.connect_timeout / 1000)

    async def _run(self, ws):
        while True:
            reason = await self._receive(ws)
            self._ws = None
            if self._closing:
                return
            self._on_disconnected(reason)
            ws = await self._reconnect()
            if ws is None:
                return

    async def _receive(self, ws) -> str:
        """Pump frames until the socket closes. Returns the close reason."""
        try:
            async for frame in ws:
                self._handle_frame(frame)
        except ConnectionClosed as e:
            return _error_text(e)
        return getattr(ws, "close_reason", None) or "server closed the connection"

    async def _reconnect(self):
        for attempt in range(1, self.config.max_retries + 1):
            await asyncio.sleep(self.config.reconnect_interval / 1000)
            if self._closing:
                return None

            self._status.reconnect_attempts = attempt
            self._status.state = SessionState.RECONNECTING
            self._log.info("session.reconnect_attempt", attempt=attempt)
            self._notify()

            try:
                ws = await self._connector(self.url)
            except CONNECT_ERRORS as e:
                self._status.error = _error_text(e)
                self._log.warning("session.reconnect_failed", attempt=attempt, error=self._status.error)
                continue

            if self._closing:
                await ws.close()
                return None
            self._log.info("session.reconnected", attempts=attempt)
            self._on_connected(ws)
            return ws

        self._status.connected = False
        self._status.state = SessionState.FAILED
        self._status.error = TERMINAL_ERROR
        self._log.error("session.reconnect_exhausted", max_retries=self.config.max_retries)
        self._notify()
        return None

    def _on_connected(self, ws):
        self._ws = ws
        self._status.connected = True
        self._status.state = SessionState.CONNECTED
        self._status.last_connected = utcnow()
        self._status.reconnect_attempts = 0
        self._status.error = None
        self._log.info("session.connected", url=self.url)
        self._notify()

    def _on_disconnected(self, reason: str):
        self._status.connected = False
        self._status.state = SessionState.DISCONNECTED
        self._status.error = reason
        self._log.warning("session.connection_lost", reason=reason)
        self._notify()

    def _handle_frame(self, frame: Union[str, bytes]):
        try:
            message = orjson.loads(frame)
            kind, data = message.get("type"), message.get("data")
        except (orjson.JSONDecodeError, AttributeError):
            self._log.warning("session.invalid_frame")
            return

        if kind == "webhook":
            try:
                event = WebhookEvent.model_validate(data)
            except ValidationError as e:
                self._log.warning("session.invalid_event", error=str(e))
                return
            self._log.info("session.event_received", event_id=event.id, endpoint=event.endpoint)
            self._enqueue(event)
        elif kind == "stats":
            data = data or {}
            self._log.info(
                "session.hub_stats",
                total_events=data.get("totalEvents"),
                active_connections=data.get("activeConnections"),
            )
        elif kind == "pong":
            self.last_pong = (data or {}).get("timestamp")
            self._pong.set()
            self._log.debug("session.pong", timestamp=self.last_pong)
        else:
            self._log.debug("session.frame_ignored", type=kind)

    def _enqueue(self, event: WebhookEvent):
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            self._log.warning("session.event_dropped", event_id=event.id)

    async def _consume_events(self):
        while True:
            event = await self._events.get()
            if self._event_callback is None:
                continue
            try:
                result = self._event_callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._log.error(
                    "session.event_callback_failed",
                    event_id=event.id,
                    error=str(e),
                    exc_info=True,
                )

    def _notify(self):
        if self._status_callback is not None:
            self._status_callback(self.status)


def _error_text(error: BaseException) -> str:
    return str(error) or error.__class__.__name__
