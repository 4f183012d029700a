"""Frame decoding shared by all chunk parsers.

Response bodies arrive as arbitrarily split text fragments.  A decoder
buffers them until a full frame is available; :func:`parse_stream` hands
each decoded frame to a provider :class:`ChunkParser` and yields the
resulting :data:`StreamChunk` values in arrival order.
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Protocol

from chat_gateway.errors import StreamFailedError
from chat_gateway.types import StreamChunk

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Frame:
    """One complete frame: the SSE ``event`` name (may be empty) and its data."""

    data: str
    event: str = ""


class ChunkParser(Protocol):
    """Turns decoded frames of one provider call into stream chunks.

    Parsers may keep state between frames (open tool calls, running
    usage), so a fresh instance is used for every call.  Raising
    ``KeyError``/``TypeError``/``ValueError`` marks the frame malformed;
    provider errors (rate limit, overload) propagate.
    """

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        ...


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

class SseDecoder:
    """Incremental server-sent-events decoder.

    Handles ``data:``/``event:`` fields, comment lines, CRLF line endings
    and multi-line data.  The ``[DONE]`` sentinel is dropped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._event = ""
        self._data: list[str] = []

    def feed(self, text: str) -> list[Frame]:
        self._buffer += text
        frames: list[Frame] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            frame = self._process_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[Frame]:
        frames: list[Frame] = []
        if self._buffer:
            frame = self._process_line(self._buffer.rstrip("\r"))
            self._buffer = ""
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _process_line(self, line: str) -> Frame | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value.strip()
        return None

    def _dispatch(self) -> Frame | None:
        if not self._data:
            self._event = ""
            return None
        data = "\n".join(self._data)
        event = self._event
        self._data = []
        self._event = ""
        if data.strip() == DONE_SENTINEL:
            _logger.debug("Stream sent %s", DONE_SENTINEL)
            return None
        return Frame(data=data, event=event)


class JsonBodyDecoder:
    """Collects a whole JSON response body into a single frame."""

    def __init__(self) -> None:
        self._parts: list[str] = []

    def feed(self, text: str) -> list[Frame]:
        self._parts.append(text)
        return []

    def flush(self) -> list[Frame]:
        body = "".join(self._parts)
        self._parts = []
        return [Frame(data=body)] if body.strip() else []


def make_decoder(framing: str) -> SseDecoder | JsonBodyDecoder:
    if framing == "json":
        return JsonBodyDecoder()
    return SseDecoder()


# ---------------------------------------------------------------------------
# Chunk stream
# ---------------------------------------------------------------------------

def _parse_frame(frame: Frame, parser: ChunkParser) -> list[StreamChunk]:
    _logger.debug("Frame event=%r data=%s", frame.event, frame.data[:500])
    try:
        data = json.loads(frame.data)
    except json.JSONDecodeError:
        _logger.warning("Skipping malformed frame: %s", frame.data[:200])
        return []
    try:
        return parser.parse(frame.event, data)
    except (KeyError, TypeError, ValueError, AttributeError, IndexError) as exc:
        _logger.warning("Skipping unparseable frame (%s): %s", exc, frame.data[:200])
        return []


async def parse_stream(
    fragments: AsyncGenerator[str, None],
    parser: ChunkParser,
    framing: str = "sse",
) -> AsyncIterator[StreamChunk]:
    """Yield the chunks of one provider response, in arrival order.

    Raises :class:`StreamFailedError` when the response ends without a
    single usable chunk.  Closing this generator closes *fragments*.
    """
    decoder = make_decoder(framing)
    produced = False
    async with aclosing(fragments):
        async for text in fragments:
            for frame in decoder.feed(text):
                for chunk in _parse_frame(frame, parser):
                    produced = True
                    yield chunk
        for frame in decoder.flush():
            for chunk in _parse_frame(frame, parser):
                produced = True
                yield chunk
    if not produced:
        raise StreamFailedError("Provider response contained no usable data")
