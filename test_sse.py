#!/usr/bin/env python3
"""
Tests for server-sent event decoding: frame buffering across chunk
boundaries and tolerant record parsing.
"""

from tsugi_client.chat.models import (
    DoneEvent,
    TextEvent,
    ToolCallEvent,
    UnknownEvent,
    UsageEvent,
)
from tsugi_client.chat.sse import FrameDecoder, parse_event_stream, parse_frame


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


def test_frame_split_across_chunks_is_buffered():
    """A frame cut by a chunk boundary is delivered once, whole."""
    decoder = FrameDecoder()

    assert decoder.feed(b'data: {"type":"text","con') == []
    assert decoder.pending == 'data: {"type":"text","con'

    frames = decoder.feed(b'tent":"Hello"}\n\ndata: {"type":"done"}\n\n')
    assert frames == ['data: {"type":"text","content":"Hello"}', 'data: {"type":"done"}']
    assert decoder.pending == ""


def test_multibyte_character_split_across_chunks():
    """A UTF-8 sequence spanning two chunks decodes correctly."""
    decoder = FrameDecoder()
    encoded = 'data: {"type":"text","content":"héllo"}\n\n'.encode()
    cut = encoded.index("é".encode()) + 1

    assert decoder.feed(encoded[:cut]) == []
    frames = decoder.feed(encoded[cut:])

    event = parse_frame(frames[0])
    assert isinstance(event, TextEvent)
    assert event.content == "héllo"


def test_crlf_delimiters_are_normalized():
    decoder = FrameDecoder()
    frames = decoder.feed(b'data: {"type":"done"}\r\n\r\ndata: {"type":"done"}\r')
    assert len(frames) == 1
    frames = decoder.feed(b"\n\r\n")
    assert len(frames) == 1


def test_byte_at_a_time_matches_whole_body():
    """Delimiters and CRLF pairs cut at every possible boundary."""
    body = (
        b'data: {"type":"text","content":"a"}\r\n\r\n'
        b": keepalive\n\n"
        b'data: {"type":"text",\r\ndata: "content":"b"}\n\n\n'
        b'data: {"type":"done"}\r\n\r\n'
    )
    whole = FrameDecoder().feed(body)

    decoder = FrameDecoder()
    frames: list[str] = []
    for i in range(len(body)):
        frames.extend(decoder.feed(body[i : i + 1]))

    assert frames == whole
    assert len(frames) == 4
    assert frames[2] == 'data: {"type":"text",\ndata: "content":"b"}'
    assert decoder.pending == ""


def test_trailing_partial_frame_is_discarded():
    decoder = FrameDecoder()
    decoder.feed(b'data: {"type":"text","content":"never finished"')
    decoder.close()
    assert decoder.pending == ""


def test_malformed_json_is_skipped():
    assert parse_frame('data: {"type": "text", "content": ') is None
    assert parse_frame("data: [1, 2, 3]") is None
    assert parse_frame('data: {"content": "no type"}') is None


def test_non_data_lines_are_ignored():
    """Comments and event/id lines carry no payload."""
    assert parse_frame(": keepalive") is None

    event = parse_frame('event: message\nid: 7\ndata: {"type":"done"}')
    assert isinstance(event, DoneEvent)


def test_multiple_data_lines_are_joined():
    event = parse_frame('data: {"type":"text",\ndata: "content":"joined"}')
    assert isinstance(event, TextEvent)
    assert event.content == "joined"


def test_unknown_event_type_is_kept():
    event = parse_frame('data: {"type":"future-thing","payload":1}')
    assert isinstance(event, UnknownEvent)
    assert event.type == "future-thing"


def test_invalid_record_for_known_type_is_skipped():
    # tool-progress requires a tool name and a status
    assert parse_frame('data: {"type":"tool-progress"}') is None


def test_camel_case_fields_are_mapped():
    event = parse_frame(
        'data: {"type":"usage","usage":{"promptTokens":10,"completionTokens":5,'
        '"cachedContentTokenCount":2},"executionTimeMs":120,"rootSpanId":"span-1","status":"pending"}'
    )
    assert isinstance(event, UsageEvent)
    assert event.usage is not None
    assert event.usage.prompt_tokens == 10
    assert event.usage.cached_content_token_count == 2
    assert event.execution_time_ms == 120
    assert event.root_span_id == "span-1"
    assert event.status == "pending"


def test_null_usage_payload():
    event = parse_frame('data: {"type":"usage","usage":null,"executionTimeMs":50}')
    assert isinstance(event, UsageEvent)
    assert event.usage is None


async def test_parse_event_stream_skips_bad_records():
    """One bad record never aborts the stream."""
    events = [
        event
        async for event in parse_event_stream(
            _chunks(
                b'data: {"type":"tool-call","command":"ls","commandId":"c1"}\n\n',
                b"data: not json\n\n",
                b'data: {"type":"text","content":"ok"}\n',
                b'\ndata: {"type":"done"}\n\n',
            )
        )
    ]

    assert [type(e) for e in events] == [ToolCallEvent, TextEvent, DoneEvent]
    assert events[0].command_id == "c1"
