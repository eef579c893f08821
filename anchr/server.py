"""
Anchr hub server - receives webhooks and relays them to subscribers.

Features:
- Catch-all webhook ingestion (any POST path)
- Real-time fan-out to WebSocket subscribers at /ws
- Structured logging with request ids
- Prometheus metrics at /metrics
- Health and hub statistics endpoints
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.webhook_router import WebhookReceiver, create_webhook_router
from .api.ws_router import router as ws_router
from .config import Settings, get_settings
from .health import HealthChecker
from .logging import get_logger
from .metrics import Metrics
from .middleware.error_handler import ErrorHandlerMiddleware
from .middleware.http_metrics import MetricsMiddleware
from .middleware.request_context import RequestContextMiddleware
from .middleware.security import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from .streaming.hub import BroadcastHub

SERVICE_NAME = "anchr"
VERSION = "1.0.0"


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the hub server application.

    The gateway, hub, metrics and health checker are created per app and
    exposed on ``app.state``.
    """
    settings = settings or get_settings()
    logger = get_logger(service=SERVICE_NAME)

    metrics = Metrics(service_name=SERVICE_NAME, version=VERSION)
    health_checker = HealthChecker(service_name=SERVICE_NAME, version=VERSION)
    hub = BroadcastHub(
        queue_size=settings.HUB_QUEUE_SIZE,
        metrics=metrics,
        logger=logger.bind(component="hub"),
    )
    receiver = WebhookReceiver(metrics=metrics, logger=logger.bind(component="gateway"))
    receiver.set_event_callback(hub.broadcast_event)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "service_starting",
            version=VERSION,
            env=settings.ENV,
            max_payload_size=settings.MAX_PAYLOAD_SIZE,
        )
        yield
        logger.info("service_stopping", total_events=hub.get_stats().total_events)
        metrics.mark_down()

    app = FastAPI(
        title="Anchr",
        version=VERSION,
        description="Webhook relay: receive anywhere, deliver to local subscribers",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.hub = hub
    app.state.receiver = receiver

    # Last added runs first: request context wraps everything else
    app.add_middleware(BodySizeLimitMiddleware, max_size=settings.MAX_PAYLOAD_SIZE)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGIN.split(",")],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)

    @app.get("/health")
    async def health():
        """Liveness probe - returns 200 while the process is serving."""
        return health_checker.liveness()

    @app.get("/stats")
    async def stats():
        """Hub statistics: events broadcast, connected subscribers, uptime."""
        return hub.get_stats().to_wire()

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        """Prometheus exposition of the server registry."""
        return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    app.include_router(ws_router)

    # Claims every remaining path, so it goes last
    app.include_router(create_webhook_router(receiver))

    return app


def run(host: str | None = None, port: int | None = None):
    """Serve the hub with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=host or settings.HOST,
        port=port or settings.PORT,
        log_config=None,
    )
