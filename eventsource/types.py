"""Type definitions for the eventsource client - ready states, events and options."""

from enum import IntEnum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field


# ============================================================================
# Ready State
# ============================================================================

class ReadyState(IntEnum):
    """Connection lifecycle stage, numbered like the browser EventSource."""
    CONNECTING = 0
    OPEN = 1
    CLOSED = 2


# ============================================================================
# Events
# ============================================================================

class Event(BaseModel):
    """Base event delivered to listeners. Immutable once built."""
    type: str

    class Config:
        frozen = True


class MessageEvent(Event):
    """An event parsed from the stream."""
    data: str = ""
    last_event_id: str = Field(default="", alias="lastEventId")
    origin: str = ""

    class Config:
        frozen = True
        populate_by_name = True


class ErrorEvent(Event):
    """Connection problem. ``status`` is set when the server answered."""
    type: str = "error"
    status: Optional[int] = None
    message: Optional[str] = None


# ============================================================================
# Options
# ============================================================================

class EventSourceOptions(BaseModel):
    """Construction options for an event source."""
    # Entries with an empty or None value are not sent
    headers: Dict[str, Optional[str]] = Field(default_factory=dict)
    with_credentials: bool = Field(default=False, alias="withCredentials")
    reconnect_interval: int = Field(default=1000, ge=0, alias="reconnectInterval")
    # Opaque to the client, handed to the transport as-is (TLS params, proxy, timeout...)
    transport_options: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    def merged(self, **overrides: Any) -> "EventSourceOptions":
        """Return a validated copy with ``overrides`` applied (field names or aliases)."""
        data = self.model_dump(by_alias=True)
        for key, value in overrides.items():
            field = type(self).model_fields.get(key)
            data[field.alias or key if field is not None else key] = value
        return type(self).model_validate(data)


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for ``url``; the port only when non-default."""
    parsed = httpx.URL(url)
    if not parsed.scheme or not parsed.host:
        return ""
    host = parsed.host
    if ":" in host:
        host = f"[{host}]"
    origin = f"{parsed.scheme}://{host}"
    if parsed.port is not None:
        origin += f":{parsed.port}"
    return origin
