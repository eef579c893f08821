"""One-line renderings shown to the operator by the CLI."""
from .event_models import ForwardResult, WebhookEvent, isoformat


def format_event(event: WebhookEvent) -> str:
    return (
        f"[{isoformat(event.timestamp)}] {event.method} {event.endpoint} "
        f"from {event.source} ({event.ip})"
    )


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{round(ms)}ms"
    return f"{ms / 1000:.2f}s"


def format_forward_result(result: ForwardResult) -> str:
    if result.success:
        return (
            f"  ✓ Forwarded to {result.endpoint} ({result.status_code}) "
            f"in {format_duration(result.response_time)}"
        )
    return f"  ✗ Failed to forward to {result.endpoint}: {result.error}"
