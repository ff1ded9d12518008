"""Stream decoding for intercepted response bodies.

Two framings are supported:

- event-stream: ``data: <payload>`` lines, where ``[DONE]`` terminates the
  stream and every other payload is a JSON document. Lines may be split
  across chunks, and so may multi-byte UTF-8 characters.
- json: the whole body is one JSON document.
"""

import codecs
import json
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

DONE_MARKER = "[DONE]"


class DecodeError(ValueError):
    """Raised when a JSON-framed body is not valid JSON."""


class Framing(str, Enum):
    EVENT_STREAM = "event_stream"
    JSON = "json"


@dataclass
class DecodedEvent:
    """One logical event from a response body."""

    data: Any = None
    done: bool = False


def framing_for_content_type(content_type: str | None) -> Framing | None:
    """Pick the framing for a response content type.

    Returns None for content types that carry no conversation data.
    """
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime == "text/event-stream":
        return Framing.EVENT_STREAM
    if mime == "application/json" or mime.endswith("+json"):
        return Framing.JSON
    return None


class EventStreamDecoder:
    """Incremental decoder for ``data:``-framed event streams."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[DecodedEvent]:
        """Consume one chunk and return the events completed by it."""
        self._buffer += self._utf8.decode(chunk)
        lines = self._buffer.split("\n")
        # The last element is an incomplete line (or empty)
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def finish(self) -> list[DecodedEvent]:
        """Flush the decoder at end of data."""
        self._buffer += self._utf8.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        if not remaining:
            return []
        return self._parse_lines([remaining])

    def _parse_lines(self, lines: list[str]) -> list[DecodedEvent]:
        events: list[DecodedEvent] = []
        for line in lines:
            event = parse_data_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events


def parse_data_line(line: str) -> DecodedEvent | None:
    """Parse a single event-stream line.

    Returns None for non-data lines and for payloads that are not JSON.
    """
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    if payload.strip() == DONE_MARKER:
        return DecodedEvent(done=True)
    try:
        return DecodedEvent(data=json.loads(payload))
    except json.JSONDecodeError:
        return None


def decode_json_body(body: bytes) -> DecodedEvent:
    """Parse a buffered JSON body.

    Raises:
        DecodeError: If the body is not valid UTF-8 JSON.
    """
    try:
        return DecodedEvent(data=json.loads(body.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"invalid JSON body: {e}") from e


def decode(chunks: Iterable[bytes], framing: Framing) -> list[DecodedEvent]:
    """Decode a complete sequence of body chunks.

    Raises:
        DecodeError: For json framing when the body is not valid JSON.
    """
    if framing is Framing.JSON:
        return [decode_json_body(b"".join(chunks))]

    decoder = EventStreamDecoder()
    events: list[DecodedEvent] = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.finish())
    return events


async def decode_async(chunks: AsyncIterable[bytes], framing: Framing) -> list[DecodedEvent]:
    """Decode body chunks as they are read from a response stream.

    Terminates when the chunk source is exhausted.

    Raises:
        DecodeError: For json framing when the body is not valid JSON.
    """
    if framing is Framing.JSON:
        parts = [chunk async for chunk in chunks]
        return [decode_json_body(b"".join(parts))]

    decoder = EventStreamDecoder()
    events: list[DecodedEvent] = []
    async for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.finish())
    return events
