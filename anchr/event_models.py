from pydantic import BaseModel, ConfigDict, Field, field_serializer
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping
import uuid

REDACTED = "[REDACTED]"
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key", "x-auth-token"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(ts: datetime) -> str:
    """Wire form of a timestamp: UTC, millisecond precision, ``Z`` suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Copy headers, replacing credentials with a redaction marker."""
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


class WebhookEvent(BaseModel):
    """One captured inbound webhook call. Never mutated once built."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    source: str
    endpoint: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    method: str = "POST"
    ip: str
    user_agent: str | None = Field(default=None, alias="userAgent")

    @field_serializer("timestamp")
    def _serialize_timestamp(self, ts: datetime) -> str:
        return isoformat(ts)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def create_webhook_event(
    source: str,
    endpoint: str,
    headers: Mapping[str, str],
    body: Any,
    method: str,
    ip: str,
    user_agent: str | None = None,
) -> WebhookEvent:
    """Build an event with a fresh id and capture time; headers are redacted here."""
    return WebhookEvent(
        source=source,
        endpoint=endpoint,
        headers=sanitize_headers(headers),
        body=body,
        method=method,
        ip=ip,
        user_agent=user_agent,
    )


class HubStats(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    total_events: int = Field(0, alias="totalEvents")
    active_connections: int = Field(0, alias="activeConnections")
    uptime: int = Field(0, description="Milliseconds since hub start")
    last_event: datetime | None = Field(None, alias="lastEvent")

    @field_serializer("last_event")
    def _serialize_last_event(self, ts: datetime | None) -> str | None:
        return isoformat(ts) if ts else None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ConnectionStatus(BaseModel):
    """Subscriber-side connection state, owned by the session."""
    connected: bool = False
    state: SessionState = SessionState.DISCONNECTED
    last_connected: datetime | None = None
    reconnect_attempts: int = 0
    error: str | None = None


class ForwardResult(BaseModel):
    """Outcome of re-delivering one event to one target."""
    model_config = ConfigDict(frozen=True)

    endpoint: str
    success: bool
    status_code: int | None = None
    error: str | None = None
    response_time: float = Field(0.0, description="Milliseconds")
