import re
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?b)?\s*$", re.IGNORECASE)


def parse_size(value: Any) -> int:
    """Parse a byte size such as ``65536``, ``"512kb"`` or ``"10mb"``."""
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "b").lower()])


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    CORS_ORIGIN: str = "*"
    MAX_PAYLOAD_SIZE: int = 10 * 1024 * 1024
    LOG_JSON: bool = True
    LOG_LEVEL: str = "info"
    # Outbound messages buffered per subscriber before the hub starts dropping
    HUB_QUEUE_SIZE: int = 1000

    @field_validator("MAX_PAYLOAD_SIZE", mode="before")
    @classmethod
    def _parse_payload_size(cls, value: Any) -> int:
        return parse_size(value)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


class EventFilter(BaseModel):
    """Exact-match criteria on event fields. Unset criteria match anything."""
    model_config = ConfigDict(frozen=True)

    source: str | None = None
    endpoint: str | None = None
    method: str | None = None
    headers: dict[str, str] | None = None


class SubscriberConfig(BaseModel):
    """Settings for one subscriber session, fixed for the session's lifetime.

    Durations are milliseconds.
    """
    model_config = ConfigDict(frozen=True)

    server_url: str = Field(..., min_length=1, description="Hub address")
    subscribe_endpoints: list[str] = Field(
        default_factory=list,
        description="Endpoint prefixes to act on (empty = all)",
    )
    forward_endpoints: list[str] = Field(
        default_factory=list,
        description="Targets each accepted event is re-delivered to",
    )
    filters: list[EventFilter] = Field(default_factory=list)
    timeout: int = Field(default=5000, gt=0, description="Per-forward timeout")
    reconnect_interval: int = Field(default=1000, gt=0)
    max_retries: int = Field(default=5, ge=0)
    connect_timeout: int = Field(default=20000, gt=0)
    event_queue_size: int = Field(default=1000, gt=0)
    concurrent_forwarding: bool = False
