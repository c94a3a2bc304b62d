"""Incremental decoders for the backend's line-oriented streams.

Both the analyze endpoint (NDJSON result records) and the chat endpoint
(``text/event-stream``) deliver one self-describing JSON object per line.
Network chunks do not respect line boundaries, so each decoder keeps the
trailing fragment of a delivery until the next one completes it.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Iterable

from market_copilot.data.schema import StreamRecord
from market_copilot.errors import ProtocolViolation, StreamErrorRecord

logger = logging.getLogger(__name__)


class LineBuffer:
    """Carry-over buffer that turns arbitrary chunks into complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._pending += text
        parts = self._pending.split("\n")
        # The last fragment may be an incomplete line.
        self._pending = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> str:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return tail.rstrip("\r")


class StreamDecoder:
    """Decode an NDJSON result stream into :class:`StreamRecord` objects.

    ``feed`` returns the records completed by a chunk. A malformed line is
    dropped and the stream continues. An ``error`` record raises
    :class:`StreamErrorRecord` at once. ``close`` must be called at end of
    stream; it raises :class:`ProtocolViolation` unless exactly one
    ``complete`` record was seen.
    """

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self._complete: StreamRecord | None = None
        self._complete_count = 0
        self.dropped_lines = 0
        self.closed = False

    @property
    def complete(self) -> StreamRecord | None:
        return self._complete

    def _parse(self, line: str) -> StreamRecord | None:
        obj = json.loads(line)
        if not isinstance(obj, dict):
            raise ValueError("record is not an object")
        return StreamRecord.from_json(obj)

    def _accept(self, record: StreamRecord) -> StreamRecord:
        if record.type == "error":
            raise StreamErrorRecord(record.error or "Analysis failed")
        if record.type == "complete":
            self._complete_count += 1
            if self._complete is None:
                self._complete = record
        return record

    def feed(self, chunk: bytes | str) -> list[StreamRecord]:
        if self.closed:
            raise ProtocolViolation("data received after end of stream")
        records = []
        for line in self._lines.feed(chunk):
            if not line.strip():
                continue
            try:
                record = self._parse(line)
            except ValueError as e:
                self.dropped_lines += 1
                logger.debug(f"Dropping unparsable stream line ({e}): {line[:120]!r}")
                continue
            records.append(self._accept(record))
        return records

    def close(self) -> StreamRecord:
        """Flush the carry-over and return the terminating ``complete`` record."""
        self.closed = True
        tail = self._lines.flush()
        if tail.strip():
            try:
                self._accept(self._parse(tail))
            except ValueError:
                self.dropped_lines += 1
                logger.warning(f"Unparsable final stream fragment ignored: {tail[:120]!r}")

        if self._complete_count == 0:
            raise ProtocolViolation("Result stream ended without a complete record")
        if self._complete_count > 1:
            raise ProtocolViolation(f"Result stream sent {self._complete_count} complete records")
        return self._complete

    async def decode(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamRecord]:
        """Yield records as chunks arrive, then enforce stream termination."""
        async for chunk in chunks:
            for record in self.feed(chunk):
                yield record
        self.close()


def decode_all(chunks: Iterable[bytes | str]) -> tuple[list[StreamRecord], StreamRecord]:
    """Synchronous helper: decode a whole byte sequence at once."""
    decoder = StreamDecoder()
    records: list[StreamRecord] = []
    for chunk in chunks:
        records.extend(decoder.feed(chunk))
    return records, decoder.close()


class EventStreamDecoder:
    """Decode ``data: {json}`` server-sent events from the chat endpoint."""

    DONE = "[DONE]"

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self.done = False

    def _events(self, lines: Iterable[str]) -> list[dict[str, Any]]:
        events = []
        for line in lines:
            if not line.startswith("data:"):
                # Blank separators, comments and other SSE fields.
                continue
            data = line[5:].strip()
            if data == self.DONE:
                self.done = True
                continue
            try:
                event = json.loads(data)
            except ValueError:
                logger.debug(f"Skipping malformed chat event: {data[:120]!r}")
                continue
            if isinstance(event, dict):
                events.append(event)
        return events

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        return self._events(self._lines.feed(chunk))

    def close(self) -> list[dict[str, Any]]:
        tail = self._lines.flush()
        return self._events([tail]) if tail else []
