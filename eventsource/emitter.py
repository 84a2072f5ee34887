"""Typed publish/subscribe registry shared by the event source clients."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


class UnspecifiedEventTypeError(ValueError):
    """Raised by ``dispatch_event`` for an event without a type."""

    def __init__(self) -> None:
        super().__init__("UNSPECIFIED_EVENT_TYPE_ERR: event has no type")


def _event_type(event: Any) -> Optional[str]:
    if isinstance(event, Mapping):
        return event.get("type")
    return getattr(event, "type", None)


def _event_payload(event: Any) -> Any:
    if isinstance(event, Mapping):
        return event["detail"] if "detail" in event else event
    detail = getattr(event, "detail", None)
    return event if detail is None else detail


class EventEmitter:
    """Thread-safe typed event emitter.

    Listeners for a type run in registration order. A listener that raises is
    logged and the remaining listeners still run. A listener that returns an
    awaitable has it scheduled on the running loop.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()
        self._tasks: Set[asyncio.Future] = set()

    def on(self, event: str, callback: Optional[Listener] = None) -> Any:
        """Register event listener. Can be used as decorator."""
        if callback is None:
            # Used as decorator: @emitter.on("event")
            def decorator(fn: Listener) -> Listener:
                self.add_event_listener(event, fn)
                return fn
            return decorator
        self.add_event_listener(event, callback)
        return self

    def off(self, event: str, callback: Listener) -> Any:
        """Remove event listener."""
        self.remove_event_listener(event, callback)
        return self

    def add_event_listener(self, event: str, callback: Listener) -> None:
        if not callable(callback):
            raise TypeError(f"listener for {event!r} must be callable")
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

    def remove_event_listener(self, event: str, callback: Listener) -> None:
        """Remove the first registration of ``callback`` for ``event``.

        Compared by identity; bound methods compare with ``==`` so ``obj.method``
        matches a fresh lookup of itself.
        """
        bound = getattr(callback, "__self__", None) is not None
        with self._lock:
            listeners = self._listeners.get(event)
            if not listeners:
                return
            for index, registered in enumerate(listeners):
                if registered is callback or (bound and registered == callback):
                    del listeners[index]
                    break
            if not listeners:
                del self._listeners[event]

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        with self._lock:
            if event is None:
                self._listeners.clear()
            else:
                self._listeners.pop(event, None)

    def listeners(self, event: str) -> List[Listener]:
        """Snapshot of the listeners registered for ``event``."""
        with self._lock:
            return list(self._listeners.get(event, ()))

    def has_listeners(self, event: str) -> bool:
        with self._lock:
            return bool(self._listeners.get(event))

    # --- Single-slot handlers (onopen / onerror / onmessage) ---

    def get_handler(self, event: str) -> Optional[Listener]:
        """Return the sole listener for ``event``, or None unless exactly one is registered."""
        with self._lock:
            listeners = self._listeners.get(event)
            if listeners and len(listeners) == 1:
                return listeners[0]
            return None

    def set_handler(self, event: str, callback: Optional[Listener]) -> None:
        """Replace every listener for ``event`` with ``callback`` (None clears them)."""
        if callback is not None and not callable(callback):
            raise TypeError(f"handler for {event!r} must be callable")
        with self._lock:
            if callback is None:
                self._listeners.pop(event, None)
            else:
                self._listeners[event] = [callback]

    # --- Dispatch ---

    def dispatch_event(self, event: Any) -> None:
        """Deliver a caller-built event to the listeners of its type.

        The listeners receive the event's ``detail`` when it has one, else the
        event itself.
        """
        event_type = _event_type(event)
        if not event_type:
            raise UnspecifiedEventTypeError()
        self.emit(event_type, _event_payload(event))

    def emit(self, event: str, payload: Any = None) -> None:
        for cb in self.listeners(event):
            self._invoke(event, cb, payload)

    def emit_lazy(self, event: str, build: Callable[[], Any]) -> bool:
        """Emit the payload returned by ``build``, calling it only if someone listens.

        Returns whether anything was emitted.
        """
        listeners = self.listeners(event)
        if not listeners:
            return False
        payload = build()
        for cb in listeners:
            self._invoke(event, cb, payload)
        return True

    def _invoke(self, event: str, cb: Listener, payload: Any) -> None:
        try:
            result = cb(payload)
        except Exception:
            logger.exception("Listener %r for %r raised", cb, event)
            return
        if inspect.isawaitable(result):
            self._schedule(event, result)

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Listener for %r returned an awaitable outside an event loop; dropped", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)

        def _done(fut: asyncio.Future) -> None:
            self._tasks.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                logger.error("Async listener for %r failed", event, exc_info=fut.exception())

        task.add_done_callback(_done)
