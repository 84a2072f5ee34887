"""
Server-Sent Events client for Python

Parses ``text/event-stream`` responses incrementally, dispatches events to
listeners and reconnects on failure, resuming with ``Last-Event-ID``.

Example:
    >>> from eventsource import AsyncEventSource
    >>> source = AsyncEventSource("https://example.com/stream")
    >>> source.onmessage = lambda event: print(event.data)
    >>> await source.wait_closed()
"""

from .client import AsyncEventSource, EventSource
from .emitter import EventEmitter, UnspecifiedEventTypeError
from .parser import Field, FieldInterpreter, LineParser, LineRecord
from .transport import (
    CancellationToken,
    HttpxTransport,
    Transport,
    TransportError,
    TransportResponse,
)
from .types import (
    ErrorEvent,
    Event,
    EventSourceOptions,
    MessageEvent,
    ReadyState,
    origin_of,
)

__version__ = "1.0.0"
__all__ = [
    # Clients
    "AsyncEventSource",
    "EventSource",
    "EventSourceOptions",
    "ReadyState",
    # Events
    "Event",
    "MessageEvent",
    "ErrorEvent",
    "EventEmitter",
    "UnspecifiedEventTypeError",
    "origin_of",
    # Parsing
    "LineParser",
    "LineRecord",
    "Field",
    "FieldInterpreter",
    # Transport
    "Transport",
    "TransportResponse",
    "TransportError",
    "CancellationToken",
    "HttpxTransport",
]
