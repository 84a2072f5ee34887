"""
Event source clients - asyncio state machine and a background-thread wrapper.

Example (async)::

    source = AsyncEventSource("https://example.com/stream", headers={"Authorization": "Bearer ..."})

    @source.on("server-time")
    def on_time(event):
        print(event.data)

    await source.wait_closed()

Example (sync)::

    with EventSource("https://example.com/stream") as source:
        source.onmessage = lambda event: print(event.data)
        source.wait()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import httpx

from .emitter import EventEmitter, Listener
from .parser import FieldInterpreter, LineParser
from .transport import CancellationToken, HttpxTransport, Transport, TransportError
from .types import ErrorEvent, Event, EventSourceOptions, MessageEvent, ReadyState, origin_of

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({500, 502, 503, 504})
REDIRECT_STATUSES = frozenset({301, 307})
TEMPORARY_REDIRECT = 307

DEFAULT_HEADERS = {"Cache-Control": "no-cache", "Accept": "text/event-stream"}
LAST_EVENT_ID_HEADER = "Last-Event-ID"

# Outcomes of one connect attempt
_FOLLOW_REDIRECT = "follow"
_RECONNECT = "reconnect"
_DONE = "done"


def _merge_headers(base: Dict[str, str], extra: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """Overlay ``extra`` on ``base``; names compare case-insensitively, empty or None values are skipped."""
    merged = dict(base)
    for name, value in extra.items():
        if not value:
            continue
        for existing in [k for k in merged if k.lower() == name.lower()]:
            del merged[existing]
        merged[name] = value
    return merged


class _ListenerMixin:
    """Listener API shared by both clients. Expects ``self._emitter``."""

    _emitter: EventEmitter

    def on(self, event: str, callback: Optional[Listener] = None) -> Any:
        """Register event listener. Can be used as decorator."""
        if callback is None:
            return self._emitter.on(event)
        self._emitter.on(event, callback)
        return self

    def off(self, event: str, callback: Listener) -> Any:
        self._emitter.off(event, callback)
        return self

    def add_event_listener(self, event: str, callback: Listener) -> None:
        self._emitter.add_event_listener(event, callback)

    def remove_event_listener(self, event: str, callback: Listener) -> None:
        self._emitter.remove_event_listener(event, callback)

    def dispatch_event(self, event: Any) -> None:
        """Deliver ``event`` to the listeners of ``event.type``. Raises ``UnspecifiedEventTypeError`` without a type."""
        self._emitter.dispatch_event(event)

    @property
    def onopen(self) -> Optional[Listener]:
        return self._emitter.get_handler("open")

    @onopen.setter
    def onopen(self, callback: Optional[Listener]) -> None:
        self._emitter.set_handler("open", callback)

    @property
    def onerror(self) -> Optional[Listener]:
        return self._emitter.get_handler("error")

    @onerror.setter
    def onerror(self, callback: Optional[Listener]) -> None:
        self._emitter.set_handler("error", callback)

    @property
    def onmessage(self) -> Optional[Listener]:
        return self._emitter.get_handler("message")

    @onmessage.setter
    def onmessage(self, callback: Optional[Listener]) -> None:
        self._emitter.set_handler("message", callback)


# ============================================================================
# Async Event Source
# ============================================================================

class AsyncEventSource(_ListenerMixin):
    """
    Server-Sent Events client driven by the running asyncio loop.

    Connecting starts on the next loop iteration, so listeners registered right
    after construction see the ``open`` event. The source reconnects after
    stream end, network failures and 5xx responses, sending the last seen event
    id, until ``close()`` is called or the server answers with a status that
    is neither 200, a redirect nor a retryable 5xx.

    Args:
        url: Stream URL.
        options: ``EventSourceOptions``; keyword arguments build one when omitted.
        transport: ``Transport`` to use instead of an ``HttpxTransport``.
    """

    CONNECTING = ReadyState.CONNECTING
    OPEN = ReadyState.OPEN
    CLOSED = ReadyState.CLOSED

    def __init__(
        self,
        url: str,
        options: Optional[EventSourceOptions] = None,
        *,
        transport: Optional[Transport] = None,
        emitter: Optional[EventEmitter] = None,
        **kwargs: Any,
    ) -> None:
        if options is None:
            options = EventSourceOptions(**kwargs)
        elif kwargs:
            options = options.merged(**kwargs)

        self._loop = asyncio.get_running_loop()
        self._emitter = emitter if emitter is not None else EventEmitter()
        self._options = options

        self._url = str(url)
        self._reconnect_url: Optional[str] = None
        self._ready_state = ReadyState.CONNECTING
        self.reconnect_interval = options.reconnect_interval

        headers = {name: value for name, value in options.headers.items() if value is not None}
        self._last_event_id = ""
        for name in [k for k in headers if k.lower() == LAST_EVENT_ID_HEADER.lower()]:
            self._last_event_id = headers.pop(name) or self._last_event_id
        self._headers: Mapping[str, str] = MappingProxyType(headers)

        self._owns_transport = transport is None
        if transport is None:
            transport = HttpxTransport(
                with_credentials=options.with_credentials,
                **options.transport_options,
            )
        self._transport = transport

        self._token: Optional[CancellationToken] = None
        self._attempt: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Handle] = None
        self._release_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

        self._pending = self._loop.call_soon(self._connect)

    # --- Read-only state ---

    @property
    def ready_state(self) -> ReadyState:
        return self._ready_state

    @property
    def url(self) -> str:
        """Current target; follows redirects."""
        return self._url

    @property
    def last_event_id(self) -> str:
        return self._last_event_id

    @property
    def headers(self) -> Mapping[str, str]:
        """Extra request headers supplied at construction (without ``Last-Event-ID``)."""
        return self._headers

    @property
    def with_credentials(self) -> bool:
        return self._options.with_credentials

    # --- Lifecycle ---

    def close(self) -> None:
        """Stop streaming and never reconnect. Idempotent."""
        if self._ready_state is ReadyState.CLOSED:
            return
        self._ready_state = ReadyState.CLOSED
        logger.debug("Closing event source for %s", self._url)
        if self._token is not None:
            self._token.cancel()
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._closed.set()
        if not self._loop.is_closed():
            self._release_task = self._loop.create_task(self._release())

    async def aclose(self) -> None:
        """Close and wait until the in-flight request and the owned transport are released."""
        self.close()
        if self._release_task is not None:
            await self._release_task

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def __aenter__(self) -> "AsyncEventSource":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # --- Internal ---

    def _request_headers(self) -> Dict[str, str]:
        headers = _merge_headers(DEFAULT_HEADERS, self._headers)
        if self._last_event_id:
            headers = _merge_headers(headers, {LAST_EVENT_ID_HEADER: self._last_event_id})
        return headers

    def _connect(self) -> None:
        self._pending = None
        if self._ready_state is ReadyState.CLOSED:
            return

        token = CancellationToken()
        headers = self._request_headers()
        logger.debug("Connecting to %s (headers: %s)", self._url, ", ".join(headers))
        task = self._loop.create_task(self._run_attempt(self._url, headers, token))
        self._token = token
        self._attempt = task
        token.add_callback(lambda: self._abort(task))

    @staticmethod
    def _abort(task: asyncio.Task) -> None:
        # A listener closing the source from inside the attempt lets it unwind normally
        if task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run_attempt(self, url: str, headers: Dict[str, str], token: CancellationToken) -> None:
        message: Optional[str] = None
        try:
            async with self._transport.issue(url, headers, token) as response:
                outcome = await self._handle_response(response, token)
        except TransportError as e:
            if e.cancelled or token.cancelled:
                logger.debug("Request to %s aborted", url)
                return
            logger.debug("Request to %s failed: %s", url, e.message)
            outcome, message = _RECONNECT, e.message
        except Exception as e:
            if token.cancelled:
                return
            logger.exception("Unexpected failure while streaming %s", url)
            outcome, message = _RECONNECT, str(e) or type(e).__name__

        if token.cancelled:
            return
        if outcome == _FOLLOW_REDIRECT:
            self._pending = self._loop.call_soon(self._connect)
        elif outcome == _RECONNECT:
            self._on_connection_closed(message)

    async def _handle_response(self, response: Any, token: CancellationToken) -> str:
        status = response.status
        logger.debug("%s answered %s %s", self._url, status, response.reason)

        if status in RETRY_STATUSES:
            self._emit_error(status, response.reason)
            return _RECONNECT

        if status in REDIRECT_STATUSES:
            location = response.location
            if not location:
                # No target: the attempt stalls in CONNECTING, nothing is rescheduled
                logger.warning("%s redirect from %s without Location; connection stalled", status, self._url)
                self._emit_error(status, response.reason)
                return _DONE
            if status == TEMPORARY_REDIRECT:
                self._reconnect_url = self._url
            self._url = str(httpx.URL(self._url).join(location))
            logger.debug("Redirected (%s) to %s", status, self._url)
            return _FOLLOW_REDIRECT

        if status != 200:
            self._emit_error(status, response.reason)
            self.close()
            return _DONE

        self._ready_state = ReadyState.OPEN
        self._emitter.emit_lazy("open", lambda: Event(type="open"))

        parser = LineParser()
        interpreter = FieldInterpreter(
            on_event=self._emit_message,
            on_id=self._set_last_event_id,
            on_retry=self._set_reconnect_interval,
        )
        async for chunk in response.body:
            if token.cancelled:
                return _DONE
            for record in parser.feed(chunk):
                interpreter.process(record)
                if token.cancelled:
                    return _DONE

        logger.debug("Stream from %s ended", self._url)
        return _RECONNECT

    def _on_connection_closed(self, message: Optional[str] = None) -> None:
        if self._ready_state is ReadyState.CLOSED:
            return
        self._ready_state = ReadyState.CONNECTING
        self._emit_error(message=message)

        # A temporary redirect only holds for the attempt it was issued for
        if self._reconnect_url:
            self._url = self._reconnect_url
            self._reconnect_url = None

        if self._ready_state is ReadyState.CLOSED:
            return
        if self._pending is not None:
            self._pending.cancel()
        delay = self.reconnect_interval / 1000.0
        logger.debug("Reconnecting to %s in %.3fs", self._url, delay)
        self._pending = self._loop.call_later(delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        self._pending = None
        if self._ready_state is not ReadyState.CONNECTING:
            return
        self._connect()

    async def _release(self) -> None:
        task = self._attempt
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        if self._owns_transport:
            await self._transport.aclose()

    def _emit_message(self, event_type: str, data: str) -> None:
        self._emitter.emit_lazy(
            event_type,
            lambda: MessageEvent(
                type=event_type,
                data=data,
                last_event_id=self._last_event_id,
                origin=origin_of(self._url),
            ),
        )

    def _emit_error(self, status: Optional[int] = None, message: Optional[str] = None) -> None:
        self._emitter.emit_lazy("error", lambda: ErrorEvent(status=status, message=message))

    def _set_last_event_id(self, value: str) -> None:
        self._last_event_id = value

    def _set_reconnect_interval(self, value: int) -> None:
        self.reconnect_interval = value


# ============================================================================
# Sync Event Source (background thread)
# ============================================================================

class EventSource(_ListenerMixin):
    """Synchronous event source. Runs an ``AsyncEventSource`` on a private loop in a background thread.

    Listeners run on that thread. Register them before ``connect()`` to be sure
    not to miss the first ``open``.
    """

    CONNECTING = ReadyState.CONNECTING
    OPEN = ReadyState.OPEN
    CLOSED = ReadyState.CLOSED

    def __init__(
        self,
        url: str,
        options: Optional[EventSourceOptions] = None,
        *,
        transport: Optional[Transport] = None,
        **kwargs: Any,
    ) -> None:
        if options is None:
            options = EventSourceOptions(**kwargs)
        elif kwargs:
            options = options.merged(**kwargs)
        self._url = str(url)
        self._options = options
        self._transport = transport
        self._emitter = EventEmitter()
        self._source: Optional[AsyncEventSource] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()
        self._startup_error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._closed = False
        self._reconnect_interval = options.reconnect_interval

    @property
    def ready_state(self) -> ReadyState:
        if self._closed:
            return ReadyState.CLOSED
        if self._source is None:
            return ReadyState.CONNECTING
        return self._source.ready_state

    @property
    def url(self) -> str:
        return self._source.url if self._source is not None else self._url

    @property
    def last_event_id(self) -> str:
        if self._source is not None:
            return self._source.last_event_id
        for name, value in self._options.headers.items():
            if name.lower() == LAST_EVENT_ID_HEADER.lower() and value:
                return value
        return ""

    @property
    def reconnect_interval(self) -> int:
        return self._source.reconnect_interval if self._source is not None else self._reconnect_interval

    @reconnect_interval.setter
    def reconnect_interval(self, value: int) -> None:
        self._reconnect_interval = value
        if self._source is not None:
            self._source.reconnect_interval = value

    def connect(self) -> None:
        """Start the background thread. No-op if already started or closed."""
        with self._lock:
            if self._thread is not None or self._closed:
                return
            self._thread = threading.Thread(target=self._run, name="eventsource", daemon=True)
            self._thread.start()
        self._started.wait()
        if self._startup_error is not None:
            raise self._startup_error

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Close the source and wait for the background thread. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop, source, thread = self._loop, self._source, self._thread
        if loop is not None and source is not None and not loop.is_closed():
            loop.call_soon_threadsafe(source.close)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the source is closed. Returns False on timeout."""
        thread = self._thread
        if thread is None:
            return self._closed
        thread.join(timeout)
        return not thread.is_alive()

    def __enter__(self) -> "EventSource":
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Internal ---

    def _run(self) -> None:
        asyncio.run(self._main())

    async def _main(self) -> None:
        try:
            self._loop = asyncio.get_running_loop()
            self._source = AsyncEventSource(
                self._url,
                self._options.merged(reconnect_interval=self._reconnect_interval),
                transport=self._transport,
                emitter=self._emitter,
            )
        except Exception as e:
            self._startup_error = e
            return
        finally:
            self._started.set()

        if self._closed:
            self._source.close()
        await self._source.wait_closed()
        await self._source.aclose()
