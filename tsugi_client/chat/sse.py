"""
Server-Sent Events decoding

Turns the raw byte stream of one agent response into typed events:
- FrameDecoder: splits bytes into blank-line delimited frames, buffering
  frames that straddle chunk boundaries
- parse_frame: maps one frame to a typed event, or None when the payload
  is not valid structured data

A single malformed record never aborts the stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterable
from typing import Any

from pydantic import ValidationError

from tsugi_client.chat.models import (
    KNOWN_EVENT_TYPES,
    StreamEvent,
    UnknownEvent,
    known_event_adapter,
)

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"


class FrameDecoder:
    """Incremental decoder for one response body."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._parts: list[str] = []
        self._ends_with_newline = False
        self._carried_cr = False

    @property
    def pending(self) -> str:
        """Bytes received but not yet delivered as a complete frame."""
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return every frame it completed, in order."""
        text = self._normalize(self._decoder.decode(chunk))
        frames: list[str] = []

        if text.startswith("\n") and self._ends_with_newline:
            # The blank line straddles the chunk boundary
            frames.append(self.pending[:-1])
            self._parts = []
            self._ends_with_newline = False
            text = text[1:]

        if text:
            pieces = text.split(FRAME_DELIMITER)
            if len(pieces) > 1:
                frames.append(self.pending + pieces[0])
                frames.extend(pieces[1:-1])
                self._parts = []
            if pieces[-1]:
                self._parts.append(pieces[-1])
            self._ends_with_newline = bool(self._parts) and text.endswith("\n")

        return [frame for frame in frames if frame.strip()]

    def _normalize(self, text: str) -> str:
        """Turn CRLF into LF in freshly decoded text only."""
        if self._carried_cr:
            text = "\r" + text
            self._carried_cr = False
        if text.endswith("\r"):
            # May pair with a "\n" at the start of the next chunk
            text = text[:-1]
            self._carried_cr = True
        return text.replace("\r\n", "\n")

    def close(self) -> None:
        """End of stream: a trailing partial frame is discarded, never delivered."""
        trailing = self.pending + self._decoder.decode(b"", final=True)
        if trailing.strip():
            logger.debug("Discarding incomplete trailing frame (%d chars)", len(trailing))
        self._parts = []
        self._ends_with_newline = False
        self._carried_cr = False


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncGenerator[str]:
    """Lazily yield frames from successive byte chunks of a single body."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    decoder.close()


def _frame_payload(frame: str) -> str | None:
    data_lines: list[str] = []
    for line in frame.split("\n"):
        if not line.startswith(DATA_PREFIX):
            # comments (":"), "event:", "id:" and "retry:" lines carry nothing for us
            continue
        value = line[len(DATA_PREFIX) :]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    return "\n".join(data_lines)


def parse_frame(frame: str) -> StreamEvent | None:
    """
    Map one frame to a typed event.

    Returns None (frame dropped) when the frame carries no data line, the
    payload is not JSON, is not an object, or fails validation for its type.
    Records with an unrecognized type are returned as UnknownEvent.
    """
    payload = _frame_payload(frame)
    if payload is None:
        return None

    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.debug("Skipping malformed frame: %s", e)
        return None

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        logger.debug("Skipping frame without a type discriminator")
        return None

    if data["type"] not in KNOWN_EVENT_TYPES:
        return UnknownEvent.model_validate(data)

    try:
        return known_event_adapter.validate_python(data)
    except ValidationError as e:
        logger.debug("Skipping invalid %s event: %s", data["type"], e)
        return None


async def parse_event_stream(chunks: AsyncIterable[bytes]) -> AsyncGenerator[StreamEvent]:
    """Decode frames and yield only the events that parsed."""
    async for frame in iter_frames(chunks):
        event = parse_frame(frame)
        if event is not None:
            yield event
