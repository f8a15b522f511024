"""Tests for docpilot.engine.stream: line reassembly and record decoding."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from docpilot.engine.stream import (
    AssistantMessageEvent,
    DeltaKind,
    InitEvent,
    LifecycleEvent,
    LineBuffer,
    ResultEvent,
    StreamDeltaEvent,
    ToolActivityEvent,
    UnrecognizedEvent,
    decode_line,
    decode_stream,
    iter_events,
)


def _records() -> list[str]:
    return [
        json.dumps({"type": "system", "subtype": "init", "session_id": "s-1"}),
        json.dumps({
            "type": "stream_event",
            "event": {
                "type": "content_block_delta",
                "delta": {"type": "text_delta", "text": "héllo ✓"},
            },
        }),
        json.dumps({"type": "result", "usage": {"input_tokens": 3, "output_tokens": 4}}),
    ]


async def _agen(chunks):
    for chunk in chunks:
        yield chunk


# ── LineBuffer ──


class TestLineBuffer:
    def test_partial_line_held_until_newline(self):
        buf = LineBuffer()
        assert buf.feed(b'{"a":') == []
        assert buf.pending == '{"a":'
        assert buf.feed(b"1}\n") == ['{"a":1}']
        assert buf.pending == ""

    def test_multiple_lines_in_one_chunk(self):
        buf = LineBuffer()
        assert buf.feed(b"one\ntwo\nthr") == ["one", "two"]
        assert buf.feed(b"ee\n") == ["three"]

    def test_crlf_tolerated(self):
        buf = LineBuffer()
        assert buf.feed(b"line\r\n") == ["line"]

    def test_multibyte_split_across_chunks(self):
        data = "✓ done\n".encode("utf-8")
        buf = LineBuffer()
        lines = []
        for i in range(len(data)):
            lines.extend(buf.feed(data[i:i + 1]))
        assert lines == ["✓ done"]

    def test_close_discards_truncated_remainder(self):
        buf = LineBuffer()
        buf.feed(b'{"type":"result"}\n{"type":"assi')
        assert buf.close() == '{"type":"assi'
        assert buf.pending == ""


# ── decode_line ──


class TestDecodeLine:
    def test_init(self):
        event = decode_line(_records()[0])
        assert isinstance(event, InitEvent)
        assert event.session_id == "s-1"
        assert event.kind == "init"

    def test_text_delta(self):
        event = decode_line(_records()[1])
        assert isinstance(event, StreamDeltaEvent)
        assert event.delta_kind is DeltaKind.TEXT
        assert event.text == "héllo ✓"

    def test_tool_use_delta(self):
        line = json.dumps({
            "type": "stream_event",
            "event": {
                "type": "content_block_delta",
                "delta": {"type": "input_json_delta", "partial_json": '{"pa'},
            },
        })
        event = decode_line(line)
        assert isinstance(event, StreamDeltaEvent)
        assert event.delta_kind is DeltaKind.TOOL_USE

    def test_other_stream_events_are_lifecycle(self):
        line = json.dumps({"type": "stream_event", "event": {"type": "message_start"}})
        event = decode_line(line)
        assert isinstance(event, LifecycleEvent)
        assert event.subtype == "message_start"

    def test_assistant_message_blocks(self):
        line = json.dumps({
            "type": "assistant",
            "message": {
                "id": "msg_1",
                "content": [
                    {"type": "text", "text": "Looking"},
                    {"type": "tool_use", "id": "t1", "name": "Read", "input": {}},
                ],
            },
        })
        event = decode_line(line)
        assert isinstance(event, AssistantMessageEvent)
        assert event.text_blocks() == ["Looking"]
        assert [b["id"] for b in event.tool_use_blocks()] == ["t1"]
        assert event.message_id == "msg_1"

    def test_user_tool_result_becomes_activity(self):
        line = json.dumps({
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "t1", "is_error": True},
            ]},
        })
        event = decode_line(line)
        assert isinstance(event, ToolActivityEvent)
        assert event.completions[0].tool_id == "t1"
        assert event.completions[0].is_error is True

    def test_replayed_user_prompt_is_lifecycle(self):
        line = json.dumps({"type": "user", "message": {"role": "user", "content": "hi"}})
        assert isinstance(decode_line(line), LifecycleEvent)

    def test_result_usage(self):
        event = decode_line(_records()[2])
        assert isinstance(event, ResultEvent)
        assert event.usage.total_tokens == 7
        assert event.is_error is False

    def test_result_error_subtype(self):
        event = decode_line(json.dumps({"type": "result", "subtype": "error_max_turns"}))
        assert event.is_error is True
        assert event.usage is None

    @pytest.mark.parametrize("line", [
        "not json at all",
        "[1, 2, 3]",
        '{"no_type": true}',
        '{"type": "mystery"}',
    ])
    def test_unrecognized(self, line):
        event = decode_line(line)
        assert isinstance(event, UnrecognizedEvent)
        assert event.raw == line
        assert event.reason

    @pytest.mark.parametrize("record,expected", [
        ({"type": "result", "subtype": 5}, ResultEvent),
        ({"type": "result", "session_id": 123}, ResultEvent),
        ({"type": "system", "subtype": ["init"]}, LifecycleEvent),
        ({"type": "system", "subtype": "init", "session_id": 123}, InitEvent),
        ({"type": "stream_event", "event": {"type": 7}}, LifecycleEvent),
        (
            {"type": "stream_event",
             "event": {"type": "content_block_delta", "delta": {"type": ["x"], "text": "a"}}},
            StreamDeltaEvent,
        ),
        ({"type": "assistant", "message": {"id": {"x": 1}, "content": 3}}, AssistantMessageEvent),
    ])
    def test_unexpected_value_types_do_not_raise(self, record, expected):
        event = decode_line(json.dumps(record))
        assert isinstance(event, expected)
        assert getattr(event, "session_id", None) is None

    def test_non_string_delta_type_is_other(self):
        event = decode_line(json.dumps({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": ["x"], "text": "a"}},
        }))
        assert event.delta_kind == DeltaKind.OTHER

    def test_decoder_failure_becomes_unrecognized(self):
        def broken(raw, record):
            raise TypeError("bad field")

        line = json.dumps({"type": "result"})
        with patch.dict("docpilot.engine.stream._DECODERS", {"result": broken}):
            event = decode_line(line)
        assert isinstance(event, UnrecognizedEvent)
        assert event.raw == line
        assert "bad field" in event.reason


# ── streaming ──


def test_iter_events_skips_blank_lines():
    events = list(iter_events(["", "   ", _records()[0]]))
    assert len(events) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_size", [1, 2, 7, 64, 10_000])
async def test_chunking_does_not_change_events(chunk_size):
    data = ("\n".join(_records()) + "\n").encode("utf-8")
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]

    pairs = [pair async for pair in decode_stream(_agen(chunks))]

    assert [line for line, _ in pairs] == _records()
    assert [type(event) for _, event in pairs] == [InitEvent, StreamDeltaEvent, ResultEvent]
    assert pairs[1][1].text == "héllo ✓"


@pytest.mark.asyncio
async def test_malformed_line_does_not_stop_decoding():
    data = b"garbage\n" + _records()[0].encode() + b"\n"
    pairs = [pair async for pair in decode_stream(_agen([data]))]
    assert isinstance(pairs[0][1], UnrecognizedEvent)
    assert isinstance(pairs[1][1], InitEvent)


@pytest.mark.asyncio
async def test_unterminated_final_record_is_dropped():
    data = _records()[0].encode() + b"\n" + b'{"type":"result"'
    pairs = [pair async for pair in decode_stream(_agen([data]))]
    assert len(pairs) == 1
