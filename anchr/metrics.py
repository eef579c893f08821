"""
Prometheus metrics for the anchr hub server.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os


class Metrics:
    """
    Metrics registry for one server instance.
    """

    def __init__(self, service_name: str = "anchr", version: str = "1.0.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            registry=self.registry,
        )

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Relay metrics
        self.webhooks_received_total = Counter(
            "anchr_webhooks_received_total",
            "Inbound webhook calls turned into events",
            ["method"],
            registry=self.registry,
        )

        self.webhook_failures_total = Counter(
            "anchr_webhook_failures_total",
            "Inbound webhook calls that failed event construction",
            registry=self.registry,
        )

        self.events_broadcast_total = Counter(
            "anchr_events_broadcast_total",
            "Events fanned out by the hub",
            registry=self.registry,
        )

        self.messages_dropped_total = Counter(
            "anchr_hub_messages_dropped_total",
            "Hub messages dropped because a subscriber queue was full",
            registry=self.registry,
        )

        self.subscribers_connected = Gauge(
            "anchr_subscribers_connected",
            "Currently connected subscribers",
            registry=self.registry,
        )

        self.webhook_body_bytes = Histogram(
            "anchr_webhook_body_bytes",
            "Inbound webhook body size in bytes",
            buckets=(256, 1024, 4096, 16384, 65536, 262144, 1048576, 10485760),
            registry=self.registry,
        )

        self._setup_process_metrics()

    def _setup_process_metrics(self):
        """Set up process-level metrics using psutil."""
        self.process_memory_bytes = Gauge(
            "anchr_process_resident_memory_bytes",
            "Resident memory size in bytes",
            registry=self.registry,
        )

        self.process_open_fds = Gauge(
            "anchr_process_open_fds",
            "Number of open file descriptors",
            registry=self.registry,
        )

        self.update_system_metrics()

    def update_system_metrics(self):
        """Refresh process gauges from psutil."""
        process = psutil.Process(os.getpid())
        self.process_memory_bytes.set(process.memory_info().rss)
        try:
            self.process_open_fds.set(process.num_fds())
        except AttributeError:
            # num_fds() not available on all platforms
            pass

    def record_webhook(self, method: str, body_size: int):
        """Record an accepted inbound webhook."""
        self.webhooks_received_total.labels(method=method).inc()
        self.webhook_body_bytes.observe(body_size)

    def mark_down(self):
        self.app_up.labels(service=self.service_name, version=self.version).set(0)
