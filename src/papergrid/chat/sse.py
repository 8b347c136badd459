"""Server-sent events: encoding for our stream, incremental parsing for upstream streams."""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from dataclasses import dataclass
from typing import Any


def encode_sse_event(event: str, payload: Any) -> str:
    """One ``event:``/``data:`` block terminated by a blank line."""
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {data}\n\n"


@dataclass
class SseEvent:
    event: str
    data: Any


def _parse_block(block: str) -> SseEvent | None:
    event = "message"
    data_lines: list[str] = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value.strip() or "message"
        elif field == "data":
            data_lines.append(value)
    if not data_lines:
        return None
    raw = "\n".join(data_lines)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = {"raw": raw}
    return SseEvent(event=event, data=data)


class SseEventParser:
    """Incremental SSE parser.

    ``feed`` bytes or text as they arrive, then iterate the parser to pull the
    events completed so far. ``flush`` parses whatever is left once the
    stream ends. Iterating consumes events; they are never replayed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._carry = ""
        self._closed = False

    def feed(self, chunk: bytes | str) -> None:
        if self._closed:
            raise RuntimeError("parser already flushed")
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        text = self._carry + text
        self._carry = ""
        # A trailing CR may be the first half of a CRLF split across chunks
        if text.endswith("\r"):
            self._carry = "\r"
            text = text[:-1]
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

    def __iter__(self) -> Iterator[SseEvent]:
        while True:
            block, sep, rest = self._buffer.partition("\n\n")
            if not sep:
                return
            self._buffer = rest
            event = _parse_block(block)
            if event is not None:
                yield event

    def flush(self) -> list[SseEvent]:
        """Parse the trailing unterminated block, if any, and close the parser."""
        self._buffer += self._carry.replace("\r", "\n")
        self._carry = ""
        events = list(self)
        tail = (self._buffer + self._decoder.decode(b"", final=True)).strip("\n")
        self._buffer = ""
        self._closed = True
        if tail:
            event = _parse_block(tail)
            if event is not None:
                events.append(event)
        return events


def parse_sse_stream(chunks: Iterable[bytes | str]) -> Iterator[SseEvent]:
    parser = SseEventParser()
    for chunk in chunks:
        parser.feed(chunk)
        yield from parser
    yield from parser.flush()


async def aparse_sse_stream(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[SseEvent]:
    parser = SseEventParser()
    async for chunk in chunks:
        parser.feed(chunk)
        for event in parser:
            yield event
    for event in parser.flush():
        yield event
