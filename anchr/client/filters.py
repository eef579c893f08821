"""Subscriber-side event selection."""
from typing import Iterable

from ..config import EventFilter
from ..event_models import WebhookEvent


def matches_endpoint(event: WebhookEvent, prefixes: Iterable[str]) -> bool:
    """
    Endpoint filter applied before an event is acted on.

    Accepts everything when no prefixes are configured. Otherwise the event's
    endpoint must equal a prefix or start with it as a plain string, so
    ``/gi`` matches ``/github`` as well.
    """
    prefixes = list(prefixes)
    if not prefixes:
        return True
    return any(
        event.endpoint == prefix or event.endpoint.startswith(prefix)
        for prefix in prefixes
    )


def matches_filter(event: WebhookEvent, event_filter: EventFilter) -> bool:
    """True if every criterion set on the filter equals the event's value."""
    if event_filter.source and event.source != event_filter.source:
        return False
    if event_filter.endpoint and event.endpoint != event_filter.endpoint:
        return False
    if event_filter.method and event.method.upper() != event_filter.method.upper():
        return False
    if event_filter.headers:
        for key, value in event_filter.headers.items():
            if event.headers.get(key.lower(), event.headers.get(key)) != value:
                return False
    return True


def matches_any(event: WebhookEvent, filters: Iterable[EventFilter]) -> bool:
    filters = list(filters)
    if not filters:
        return True
    return any(matches_filter(event, f) for f in filters)


def should_process(
    event: WebhookEvent,
    prefixes: Iterable[str],
    filters: Iterable[EventFilter] = (),
) -> bool:
    return matches_endpoint(event, prefixes) and matches_any(event, filters)
