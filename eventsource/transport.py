"""
HTTP transport for the event source state machine.

The state machine only needs one thing from HTTP: issue a GET and hand back the
status, the headers and the body as a stream of byte chunks. ``Transport`` is
that contract; ``HttpxTransport`` implements it with ``httpx.AsyncClient``.

Failures are reported by raising ``TransportError``. Its ``cancelled`` flag tells
a deliberate abort (``CancellationToken.cancel()``) from a genuine failure.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Callable,
    List,
    Mapping,
    Optional,
    Protocol,
)

import httpx

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The request could not be completed."""

    def __init__(self, message: str, *, cancelled: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.cancelled = cancelled


class CancellationToken:
    """Cooperative cancellation signal, one per connect attempt."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], Any]) -> None:
        """Run ``cb`` on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            cb()
        else:
            self._callbacks.append(cb)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TransportError("aborted", cancelled=True)


@dataclass
class TransportResponse:
    """Response head plus a lazy body. ``body`` is valid inside ``Transport.issue`` only."""
    status: int
    reason: str
    headers: Mapping[str, str]
    body: AsyncIterator[bytes]

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("location") or None


class Transport(Protocol):
    def issue(
        self,
        url: str,
        headers: Mapping[str, str],
        token: CancellationToken,
    ) -> AsyncContextManager[TransportResponse]:
        """Perform one GET; the response is released when the context exits."""
        ...

    async def aclose(self) -> None:
        ...


class HttpxTransport:
    """
    ``Transport`` over ``httpx.AsyncClient``.

    Args:
        with_credentials: Keep cookies set by the server for later attempts.
        client: Use this client instead of creating one. It is not closed by ``aclose``.
        **options: ``httpx.AsyncClient`` arguments (``verify``, ``cert``, ``proxy``,
            ``timeout``...). Redirects are never followed by httpx; the event
            source handles 301/307 itself.
    """

    def __init__(
        self,
        *,
        with_credentials: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        **options: Any,
    ) -> None:
        self.with_credentials = with_credentials
        self._owns_client = client is None
        if client is None:
            options.setdefault("timeout", None)
            options["follow_redirects"] = False
            client = httpx.AsyncClient(**options)
        self._client = client

    @asynccontextmanager
    async def issue(
        self,
        url: str,
        headers: Mapping[str, str],
        token: CancellationToken,
    ) -> AsyncIterator[TransportResponse]:
        token.raise_if_cancelled()
        if not self.with_credentials:
            self._client.cookies.clear()

        try:
            request = self._client.build_request("GET", url, headers=dict(headers))
            response = await self._client.send(request, stream=True, follow_redirects=False)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(str(e) or type(e).__name__, cancelled=token.cancelled) from e

        try:
            yield TransportResponse(
                status=response.status_code,
                reason=response.reason_phrase,
                headers=response.headers,
                body=self._iter_body(response, token),
            )
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    async def _iter_body(response: httpx.Response, token: CancellationToken) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                token.raise_if_cancelled()
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise TransportError(str(e) or type(e).__name__, cancelled=token.cancelled) from e
