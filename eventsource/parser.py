"""
Incremental ``text/event-stream`` parsing.

Two stages, both fed synchronously by the connection:

- ``LineParser`` turns arbitrary byte chunks into complete lines. A line ends at
  LF, CR, or CRLF; a CRLF split across two chunks still counts once. A leading
  UTF-8 byte-order mark is dropped from the very start of the stream.
- ``FieldInterpreter`` turns lines into field updates and, at every blank line,
  into a dispatched event.

Usage::

    parser = LineParser()
    interpreter = FieldInterpreter(on_event=print)
    for chunk in chunks:
        for record in parser.feed(chunk):
            interpreter.process(record)
"""

import re
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional

BOM = b"\xef\xbb\xbf"
COLON = b":"
SPACE = b" "
LF = 0x0A

_TERMINATOR = re.compile(rb"[\r\n]")


# ============================================================================
# Line Parser
# ============================================================================

class LineRecord(NamedTuple):
    """One complete line, without its terminator."""
    line: bytes
    # Offset of the first colon in ``line``, -1 when there is none
    field_length: int


class LineParser:
    """
    Chunk-boundary-safe line splitter.

    The output for a byte stream never depends on how the stream is split
    into chunks. Unterminated trailing bytes stay buffered until a later
    chunk completes the line; the buffer is unbounded.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._bom_checked = False
        self._pending_crlf = False

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for a line terminator."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[LineRecord]:
        """Consume ``chunk`` and return every line it completes, in order."""
        buf = self._buffer
        buf += chunk

        if not self._bom_checked:
            # Wait until enough bytes arrived to tell a split BOM from data
            if len(buf) < len(BOM) and BOM.startswith(bytes(buf)):
                return []
            if buf.startswith(BOM):
                del buf[:len(BOM)]
            self._bom_checked = True

        records: List[LineRecord] = []
        pos = 0
        end = len(buf)
        while pos < end:
            if self._pending_crlf:
                self._pending_crlf = False
                if buf[pos] == LF:
                    pos += 1
                    continue

            match = _TERMINATOR.search(buf, pos)
            if match is None:
                break

            term = match.start()
            line = bytes(buf[pos:term])
            if match.group() == b"\r":
                self._pending_crlf = True
            records.append(LineRecord(line, line.find(COLON)))
            pos = term + 1

        del buf[:pos]
        return records


# ============================================================================
# Field Interpreter
# ============================================================================

class Field(Enum):
    """Recognized field names. Anything else maps to UNKNOWN and is ignored."""
    DATA = "data"
    EVENT = "event"
    ID = "id"
    RETRY = "retry"
    UNKNOWN = ""

    @classmethod
    def from_name(cls, name: bytes) -> "Field":
        return _FIELDS_BY_NAME.get(name, cls.UNKNOWN)


_FIELDS_BY_NAME: Dict[bytes, Field] = {
    field.value.encode("ascii"): field for field in Field if field is not Field.UNKNOWN
}


def _decode(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


class FieldInterpreter:
    """
    Accumulates the pending event of one connection attempt.

    Args:
        on_event: Called as ``on_event(event_type, data)`` at a blank line when
            at least one ``data`` field was seen since the previous blank line.
        on_id: Called with the value of every ``id`` field.
        on_retry: Called with the new interval (ms) for every valid ``retry`` field.
    """

    def __init__(
        self,
        on_event: Callable[[str, str], None],
        on_id: Optional[Callable[[str], None]] = None,
        on_retry: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._on_event = on_event
        self._on_id = on_id
        self._on_retry = on_retry
        self._data: List[str] = []
        self._event_name: Optional[str] = None

    @property
    def pending_data(self) -> str:
        """Data accumulated since the last blank line, newline-joined."""
        return "\n".join(self._data)

    @property
    def event_name(self) -> Optional[str]:
        return self._event_name

    def process(self, record: LineRecord) -> None:
        line, colon = record
        if not line:
            self._flush()
            return

        if colon < 0:
            name, value = line, b""
        else:
            name, value = line[:colon], line[colon + 1:]
            if value.startswith(SPACE):
                value = value[1:]

        field = Field.from_name(name)
        if field is Field.DATA:
            self._data.append(_decode(value))
        elif field is Field.EVENT:
            self._event_name = _decode(value)
        elif field is Field.ID:
            if self._on_id is not None:
                self._on_id(_decode(value))
        elif field is Field.RETRY:
            # Non-digit values (including a sign) leave the interval unchanged
            if value.isdigit() and self._on_retry is not None:
                self._on_retry(int(value))

    def _flush(self) -> None:
        data, event_name = self._data, self._event_name
        self._data = []
        self._event_name = None
        if data:
            self._on_event(event_name or "message", "\n".join(data))
