"""Ingestion gateway: turns inbound webhook calls into events."""
import inspect
from typing import Any, Awaitable, Callable, Union
from urllib.parse import parse_qsl

import orjson
import structlog
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from ..event_models import WebhookEvent, create_webhook_event, isoformat
from ..metrics import Metrics

EventCallback = Callable[[WebhookEvent], Union[None, Awaitable[None]]]

NON_POST_METHODS = ["GET", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def resolve_origin(request: Request) -> tuple[str, str]:
    """
    Best-effort origin of a call.

    Returns:
        (source, ip): source is the raw X-Forwarded-For value, ip its first
        hop; both fall back to the peer address.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return peer, peer
    first_hop = forwarded.split(",")[0].strip()
    return forwarded, first_hop or peer


def parse_body(raw: bytes, content_type: str) -> Any:
    """Parse the payload by content type. Raises on malformed JSON."""
    if not raw:
        return {}

    content_type = content_type.split(";")[0].strip().lower()
    if content_type == "application/json" or content_type.endswith("+json"):
        return orjson.loads(raw)
    if content_type == "application/x-www-form-urlencoded":
        form: dict[str, Any] = {}
        for key, value in parse_qsl(raw.decode("utf-8"), keep_blank_values=True):
            if key in form:
                existing = form[key]
                form[key] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                form[key] = value
        return form
    return raw.decode("utf-8", errors="replace")


class WebhookReceiver:
    """
    Builds a WebhookEvent for every inbound POST and acknowledges the sender.

    The registered callback runs only after the acknowledgment has been
    sent, so the sender never waits on fan-out.
    """

    def __init__(self, metrics: Metrics | None = None, logger=None):
        self._callback: EventCallback | None = None
        self._metrics = metrics
        self._log = logger or structlog.get_logger(component="gateway")

    def set_event_callback(self, callback: EventCallback):
        self._callback = callback

    async def handle(self, request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        try:
            source, ip = resolve_origin(request)
            raw = await request.body()
            body = parse_body(raw, request.headers.get("content-type", ""))
            event = create_webhook_event(
                source=source,
                endpoint=request.url.path,
                headers=dict(request.headers),
                body=body,
                method=request.method,
                ip=ip,
                user_agent=request.headers.get("user-agent"),
            )
        except Exception as e:
            self._log.error("webhook.processing_failed", error=str(e), path=request.url.path)
            if self._metrics:
                self._metrics.webhook_failures_total.inc()
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error"},
            )

        body_size = len(raw)
        self._log.info(
            "webhook.received",
            event_id=event.id,
            endpoint=event.endpoint,
            method=event.method,
            source=event.source,
            body_size=body_size,
        )
        if self._metrics:
            self._metrics.record_webhook(event.method, body_size)

        if self._callback is not None:
            background_tasks.add_task(self._dispatch, event)

        return JSONResponse(
            status_code=200,
            content={"success": True, "eventId": event.id, "timestamp": isoformat(event.timestamp)},
        )

    async def _dispatch(self, event: WebhookEvent):
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result


def create_webhook_router(receiver: WebhookReceiver) -> APIRouter:
    """
    Catch-all routes for webhook ingestion.

    Must be included after every other route: it claims all paths.
    """
    router = APIRouter(tags=["webhooks"])

    @router.post("/{path:path}")
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
        return await receiver.handle(request, background_tasks)

    @router.api_route("/{path:path}", methods=NON_POST_METHODS, include_in_schema=False)
    async def method_not_allowed():
        return JSONResponse(
            status_code=405,
            content={
                "error": "Method not allowed",
                "message": "Only POST requests are accepted for webhook endpoints",
            },
            headers={"Allow": "POST"},
        )

    return router
