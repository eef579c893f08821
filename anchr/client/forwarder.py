"""Forwarding engine: re-delivers events to downstream HTTP targets."""
import asyncio
import time
from typing import List
from urllib.parse import quote

import httpx
import orjson
import structlog

from ..event_models import ForwardResult, WebhookEvent, isoformat, utcnow

# Kept literal in relay headers; everything else is percent-encoded
_HEADER_SAFE = "/:@!$&'()*+,;=[] "


class EventForwarder:
    """
    Re-delivers an event to every configured target, one POST per target.

    Each call has its own timeout and its own error handling: a failing
    target is recorded in its ForwardResult and never affects the others.
    Results always come back in target-list order.

    Usage:
        async with EventForwarder(["http://localhost:8000/hook"]) as forwarder:
            results = await forwarder.forward_event(event)
    """

    def __init__(
        self,
        endpoints: List[str] | None = None,
        timeout: int = 5000,
        concurrent: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
        logger=None,
    ):
        """
        Args:
            endpoints: Target URLs, in delivery order
            timeout: Per-target timeout in milliseconds
            concurrent: Deliver to all targets at once instead of one by one
            transport: Optional httpx transport (tests inject a MockTransport)
            logger: Optional bound logger
        """
        self._log = logger or structlog.get_logger(component="forwarder")
        self._endpoints: List[str] = []
        self.set_endpoints(endpoints or [], quiet=True)
        self.timeout = timeout
        self.concurrent = concurrent
        self._client = httpx.AsyncClient(timeout=timeout / 1000, transport=transport)

    async def forward_event(self, event: WebhookEvent) -> List[ForwardResult]:
        """
        Deliver an event to all targets.

        Returns:
            One ForwardResult per target, in target-list order
        """
        endpoints = list(self._endpoints)
        if not endpoints:
            return []

        self._log.info(
            "forward.started",
            event_id=event.id,
            targets=len(endpoints),
            concurrent=self.concurrent,
        )
        payload = orjson.dumps(event.to_wire())

        if self.concurrent:
            return list(
                await asyncio.gather(
                    *(self._forward_to_endpoint(event, payload, endpoint) for endpoint in endpoints)
                )
            )

        results = []
        for endpoint in endpoints:
            results.append(await self._forward_to_endpoint(event, payload, endpoint))
        return results

    async def _forward_to_endpoint(
        self, event: WebhookEvent, payload: bytes, endpoint: str
    ) -> ForwardResult:
        start = time.monotonic()

        try:
            headers = {
                "Content-Type": "application/json",
                "X-Anchr-Event-ID": event.id,
                "X-Anchr-Source": header_value(event.source),
                "X-Anchr-Endpoint": header_value(event.endpoint),
                "X-Anchr-Forwarded-At": isoformat(utcnow()),
            }
            response = await asyncio.wait_for(
                self._client.post(endpoint, content=payload, headers=headers),
                timeout=self.timeout / 1000,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = f"timeout of {self.timeout}ms exceeded"
        except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as e:
            error = str(e) or e.__class__.__name__
        else:
            elapsed = _elapsed_ms(start)
            success = response.is_success
            if success:
                self._log.info(
                    "forward.succeeded",
                    event_id=event.id,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    response_time=elapsed,
                )
            else:
                self._log.warning(
                    "forward.failed",
                    event_id=event.id,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    response_time=elapsed,
                )
            return ForwardResult(
                endpoint=endpoint,
                success=success,
                status_code=response.status_code,
                error=None if success else f"HTTP {response.status_code}",
                response_time=elapsed,
            )

        elapsed = _elapsed_ms(start)
        self._log.warning(
            "forward.failed",
            event_id=event.id,
            endpoint=endpoint,
            error=error,
            response_time=elapsed,
        )
        return ForwardResult(endpoint=endpoint, success=False, error=error, response_time=elapsed)

    def add_endpoint(self, endpoint: str):
        if endpoint not in self._endpoints:
            self._endpoints.append(endpoint)
            self._log.info("forward.endpoint_added", endpoint=endpoint)

    def remove_endpoint(self, endpoint: str):
        if endpoint in self._endpoints:
            self._endpoints.remove(endpoint)
            self._log.info("forward.endpoint_removed", endpoint=endpoint)

    def set_endpoints(self, endpoints: List[str], quiet: bool = False):
        # Keep first occurrence of duplicates, preserving order
        self._endpoints = list(dict.fromkeys(endpoints))
        if not quiet:
            self._log.info("forward.endpoints_updated", endpoints=self._endpoints)

    def get_endpoints(self) -> List[str]:
        return list(self._endpoints)

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self) -> "EventForwarder":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


def header_value(value: str) -> str:
    """ASCII form of an event field for a relay header (percent-encoded when needed)."""
    if value.isascii() and value.isprintable():
        return value
    return quote(value, safe=_HEADER_SAFE)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)
