from __future__ import annotations

import pytest

from provider_checks.adapters.event_stream import (
    EventStreamParser,
    aiter_json_payloads,
    iter_json_payloads,
    merge_fragment,
    parse_json_body,
)


def test_standard_sse_events() -> None:
    text = 'data: {"a": 1}\n\ndata: {"b": 2}\n\n'
    assert iter_json_payloads(text) == [{"a": 1}, {"b": 2}]


def test_sse_multiline_data_is_joined() -> None:
    text = 'data: {"a":\ndata:  1}\n\n'
    assert iter_json_payloads(text) == [{"a": 1}]


def test_sse_events_without_blank_separator() -> None:
    text = 'data: {"a": 1}\ndata: {"b": 2}\n'
    assert iter_json_payloads(text) == [{"a": 1}, {"b": 2}]


def test_comments_and_event_lines_are_ignored() -> None:
    text = ': keep-alive\nevent: message_start\nid: 7\nretry: 1000\ndata: {"x": true}\n\n'
    assert iter_json_payloads(text) == [{"x": True}]


def test_done_sentinel_and_null_keepalive_are_skipped() -> None:
    text = 'data: null\n\ndata: {"x": 1}\n\ndata: [DONE]\n\n'
    assert iter_json_payloads(text) == [{"x": 1}]


def test_ndjson_lines() -> None:
    text = '{"a": 1}\n{"b": 2}\n'
    assert iter_json_payloads(text) == [{"a": 1}, {"b": 2}]


def test_streamed_json_array_one_element_per_line() -> None:
    text = '[{"a": 1}\n,{"b": 2}\n,{"c": 3}]\n'
    assert iter_json_payloads(text) == [{"a": 1}, {"b": 2}, {"c": 3}]


def test_streamed_json_array_with_bracket_lines() -> None:
    text = '[\n{"a": 1},\n{"b": 2}\n]\n'
    assert iter_json_payloads(text) == [{"a": 1}, {"b": 2}]


def test_trailing_unterminated_line_is_decoded_on_close() -> None:
    parser = EventStreamParser()
    assert parser.feed('data: {"a": 1}\n\ndata: {"b": 2}') == [{"a": 1}]
    assert parser.close() == [{"b": 2}]


def test_undecodable_payload_is_dropped() -> None:
    assert iter_json_payloads("data: {not json\n\n") == []


def test_feed_handles_split_chunks_and_crlf() -> None:
    parser = EventStreamParser()
    out = parser.feed('data: {"a"')
    out += parser.feed(': 1}\r\n\r\n')
    out += parser.close()
    assert out == [{"a": 1}]


@pytest.mark.asyncio
async def test_async_decoder_handles_split_multibyte_characters() -> None:
    raw = 'data: {"t": "café"}\n\n'.encode("utf-8")
    split = raw.index(b"\xa9")

    async def chunks():
        yield raw[:split]
        yield raw[split:]

    out = [p async for p in aiter_json_payloads(chunks())]
    assert out == [{"t": "café"}]


def test_parse_json_body_prefers_whole_document() -> None:
    assert parse_json_body('{"a": 1}') == [{"a": 1}]
    assert parse_json_body('[{"a": 1}, null, {"b": 2}]') == [{"a": 1}, {"b": 2}]
    assert parse_json_body('data: {"a": 1}\n\n') == [{"a": 1}]


def test_merge_fragment_incremental_prefix_does_not_duplicate() -> None:
    assert merge_fragment("The answer", "The answer is 8") == "The answer is 8"
    assert merge_fragment("The answer is 8", "The answer") == "The answer is 8"


def test_merge_fragment_appends_plain_deltas() -> None:
    acc = ""
    for piece in ["The ", "answer ", "is ", "8"]:
        acc = merge_fragment(acc, piece)
    assert acc == "The answer is 8"
    assert merge_fragment("abc", "") == "abc"
