"""Shared fixtures and fakes for the eventsource tests."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from eventsource import CancellationToken, TransportError, TransportResponse

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STREAM_URL = "http://test.local/stream"
ORIGIN = "http://test.local"


# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------

@dataclass
class Reply:
    """One scripted answer of ``FakeTransport``."""
    status: int = 200
    reason: str = "OK"
    headers: Dict[str, str] = field(default_factory=dict)
    chunks: List[bytes] = field(default_factory=list)
    # Fail before any status is known
    error: Optional[str] = None
    # Fail after the chunks were delivered
    stream_error: Optional[str] = None
    # Keep the body open after the chunks until the attempt is cancelled
    hold: bool = False


class FakeTransport:
    """Answers requests from a script; hangs once the script is exhausted."""

    def __init__(self, *replies: Reply) -> None:
        self.replies = list(replies)
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.closed = False

    @property
    def urls(self) -> List[str]:
        return [url for url, _ in self.requests]

    @asynccontextmanager
    async def issue(self, url: str, headers: Dict[str, str], token: CancellationToken):
        self.requests.append((url, dict(headers)))
        token.raise_if_cancelled()
        if not self.replies:
            await asyncio.Event().wait()
        reply = self.replies.pop(0)
        await asyncio.sleep(0)
        if reply.error:
            raise TransportError(reply.error)
        yield TransportResponse(
            status=reply.status,
            reason=reply.reason,
            headers=httpx.Headers(reply.headers),
            body=self._body(reply, token),
        )

    async def _body(self, reply: Reply, token: CancellationToken):
        for chunk in reply.chunks:
            await asyncio.sleep(0)
            token.raise_if_cancelled()
            yield chunk
        if reply.stream_error:
            raise TransportError(reply.stream_error)
        if reply.hold:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point the CLI at a throwaway config.toml."""
    from eventsource import cli

    path = tmp_path / "config.toml"
    monkeypatch.setattr(cli, "CONFIG_FILE", path)
    return path
