"""Unit tests for the NDJSON and event-stream decoders."""

from __future__ import annotations

import logging

import pytest

from market_copilot.agents.stream_decoder import EventStreamDecoder, LineBuffer, StreamDecoder, decode_all
from market_copilot.errors import ProtocolViolation, StreamErrorRecord


def test_line_buffer_keeps_trailing_fragment():
    buffer = LineBuffer()
    assert buffer.feed(b"one\ntw") == ["one"]
    assert buffer.feed(b"o\nthree") == ["two"]
    assert buffer.flush() == "three"


def test_records_split_across_chunks():
    chunks = [
        b'{"type":"partial","stage":"fe',
        b'tching"}\n{"type":"comp',
        b'lete","analysisRunId":"abc"}\n',
    ]
    records, complete = decode_all(chunks)

    assert [r.type for r in records] == ["partial", "complete"]
    assert records[0].payload == {"stage": "fetching"}
    assert complete.payload["analysisRunId"] == "abc"


def test_multibyte_character_split_between_chunks():
    encoded = '{"type":"partial","title":"café"}\n'.encode("utf-8")
    split = encoded.index(b"\xc3") + 1
    records, _ = decode_all([encoded[:split], encoded[split:], b'{"type":"complete","analysisRunId":"a"}\n'])

    assert records[0].payload["title"] == "café"


def test_nested_payload_is_used_when_present():
    records, complete = decode_all([b'{"type":"complete","payload":{"analysisRunId":"n1"}}\n'])
    assert complete.payload == {"analysisRunId": "n1"}


def test_malformed_line_is_dropped_and_stream_continues():
    decoder = StreamDecoder()
    records = decoder.feed(b'not json\n[1, 2]\n{"type":"complete","analysisRunId":"x"}\n')

    assert [r.type for r in records] == ["complete"]
    assert decoder.dropped_lines == 2
    assert decoder.close().payload["analysisRunId"] == "x"


def test_unknown_record_types_pass_through():
    records, _ = decode_all([b'{"type":"heartbeat"}\n{"type":"complete","analysisRunId":"x"}\n'])
    assert records[0].type == "heartbeat"


def test_crlf_line_endings():
    _, complete = decode_all([b'{"type":"complete","analysisRunId":"crlf"}\r\n'])
    assert complete.payload["analysisRunId"] == "crlf"


def test_final_line_without_newline_is_flushed_on_close():
    decoder = StreamDecoder()
    assert decoder.feed(b'{"type":"complete","analysisRunId":"tail"}') == []
    assert decoder.close().payload["analysisRunId"] == "tail"


def test_unparsable_final_fragment_logs_warning(caplog):
    decoder = StreamDecoder()
    decoder.feed(b'{"type":"complete","analysisRunId":"ok"}\n{"type":"par')

    with caplog.at_level(logging.WARNING, logger="market_copilot.agents.stream_decoder"):
        complete = decoder.close()

    assert complete.payload["analysisRunId"] == "ok"
    assert "Unparsable final stream fragment" in caplog.text


def test_error_record_raises_immediately():
    decoder = StreamDecoder()
    with pytest.raises(StreamErrorRecord) as exc_info:
        decoder.feed(b'{"type":"partial","stage":"fetching"}\n{"type":"error","error":"upstream quota exhausted"}\n')

    assert exc_info.value.kind == "stream_error"
    assert exc_info.value.message == "upstream quota exhausted"


def test_stream_without_complete_is_protocol_violation():
    decoder = StreamDecoder()
    decoder.feed(b'{"type":"partial","stage":"fetching"}\n')
    with pytest.raises(ProtocolViolation):
        decoder.close()


def test_two_complete_records_is_protocol_violation():
    with pytest.raises(ProtocolViolation) as exc_info:
        decode_all([b'{"type":"complete","analysisRunId":"a"}\n{"type":"complete","analysisRunId":"b"}\n'])
    assert exc_info.value.kind == "protocol"


def test_feed_after_close_is_rejected():
    decoder = StreamDecoder()
    decoder.feed(b'{"type":"complete","analysisRunId":"a"}\n')
    decoder.close()
    with pytest.raises(ProtocolViolation):
        decoder.feed(b"{}\n")


@pytest.mark.asyncio
async def test_async_decode_yields_records_then_checks_termination():
    async def chunks():
        yield b'{"type":"partial","stage":"enriching"}\n'
        yield b'{"type":"complete","analysisRunId":"z"}\n'

    decoder = StreamDecoder()
    records = [r async for r in decoder.decode(chunks())]

    assert [r.type for r in records] == ["partial", "complete"]
    assert decoder.closed


@pytest.mark.asyncio
async def test_async_decode_raises_when_stream_ends_early():
    async def chunks():
        yield b'{"type":"partial","stage":"enriching"}\n'

    decoder = StreamDecoder()
    with pytest.raises(ProtocolViolation):
        async for _ in decoder.decode(chunks()):
            pass


class TestEventStreamDecoder:
    def test_events_split_across_chunks(self):
        decoder = EventStreamDecoder()
        assert decoder.feed(b'data: {"content":"Hel') == []
        events = decoder.feed(b'lo"}\n\ndata: [DONE]\n\n')

        assert events == [{"content": "Hello"}]
        assert decoder.done

    def test_comments_and_malformed_events_are_skipped(self):
        decoder = EventStreamDecoder()
        events = decoder.feed(b': keepalive\n\ndata: {oops\n\nevent: note\ndata: {"metadata":{"type":"citations"}}\n\n')

        assert events == [{"metadata": {"type": "citations"}}]
        assert not decoder.done

    def test_close_flushes_last_event(self):
        decoder = EventStreamDecoder()
        decoder.feed(b'data: {"content":"end"}')
        assert decoder.close() == [{"content": "end"}]
