"""
Server-sent events framing shared by the HTTP adapters.

Pure decoding, no I/O:
- bytes are decoded incrementally, so a multi-byte UTF-8 sequence split
  across network chunks is never corrupted
- CRLF is normalized to LF
- events are separated by a blank line
- `data:` lines are accepted with or without the space after the colon
- multiple data lines in one event are joined with "\n"
- comment lines (leading ":") are ignored
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator


@dataclass(frozen=True)
class SSEFrame:
    data: str
    event: str | None = None


class SSEDecoder:
    """Incremental decoder: feed raw bytes, get complete frames back."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")

        frames: list[SSEFrame] = []
        while True:
            end = self._buffer.find("\n\n")
            if end < 0:
                break
            block = self._buffer[:end]
            self._buffer = self._buffer[end + 2:]
            frame = _parse_block(block)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[SSEFrame]:
        """Emit a trailing event left without its blank-line terminator."""
        self._buffer += self._decoder.decode(b"", final=True)
        block = self._buffer.replace("\r\n", "\n").strip("\n")
        self._buffer = ""
        if not block:
            return []
        frame = _parse_block(block)
        return [frame] if frame is not None else []


def _parse_block(block: str) -> SSEFrame | None:
    data_lines: list[str] = []
    event: str | None = None

    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            payload = line[5:]
            if payload.startswith(" "):
                payload = payload[1:]
            data_lines.append(payload)
        elif line.startswith("event:"):
            event = line[6:].strip()

    if not data_lines:
        return None
    return SSEFrame(data="\n".join(data_lines), event=event)


async def iter_sse_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[SSEFrame]:
    """Decode an async byte stream (e.g. httpx `aiter_bytes()`) into frames."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame
