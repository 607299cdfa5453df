#!/usr/bin/env python3
"""Test the incremental SSE parser against awkward chunk boundaries."""

from __future__ import annotations

from llm_relay.streaming.sse_parser import SSEFrame, SSEParser


def _parse(body: bytes, chunk_size: int | None = None) -> list[SSEFrame]:
    parser = SSEParser()
    frames: list[SSEFrame] = []
    if chunk_size is None:
        frames.extend(parser.feed(body))
    else:
        for i in range(0, len(body), chunk_size):
            frames.extend(parser.feed(body[i : i + chunk_size]))
    frames.extend(parser.flush())
    return frames


def test_chunking_does_not_change_frames():
    """Same frames whether the body arrives whole or one byte at a time."""
    print("🧪 Testing chunk-boundary independence")
    body = (
        b'event: content_block_delta\r\ndata: {"text": "Hi"}\r\n\r\n'
        b'data: {"text": "caf\xc3\xa9 \xf0\x9f\x98\x80"}\n\n'
        b"data: [DONE]\n\n"
    )

    whole = _parse(body)
    for size in (1, 2, 3, 7):
        assert _parse(body, size) == whole, f"chunk size {size} changed the frames"

    assert whole == [
        SSEFrame(data='{"text": "Hi"}', event="content_block_delta"),
        SSEFrame(data='{"text": "café 😀"}'),
        SSEFrame(data="[DONE]"),
    ]
    print("✅ 1-byte, small and whole-body chunking agree")


def test_split_utf8_character_is_reassembled():
    print("🧪 Testing multi-byte character split across chunks")
    parser = SSEParser()
    assert parser.feed(b'data: {"t": "\xe2\x82') == []
    frames = parser.feed(b'\xac"}\n\n')
    assert frames == [SSEFrame(data='{"t": "€"}')]
    print("✅ Euro sign survived the split")


def test_crlf_split_between_chunks():
    print("🧪 Testing CR and LF arriving in different chunks")
    parser = SSEParser()
    frames = parser.feed(b"data: one\r")
    frames += parser.feed(b"\n\r")
    frames += parser.feed(b"\ndata: two\r\n\r\n")
    assert [f.data for f in frames] == ["one", "two"]
    print("✅ No spurious blank line from a split CRLF")


def test_keepalive_comments_are_skipped():
    print("🧪 Testing comment lines")
    parser = SSEParser()
    frames = parser.feed(b": keep-alive\n\n: OPENROUTER PROCESSING\n\ndata: x\n\n")
    assert frames == [SSEFrame(data="x")]
    assert parser.comments_seen == 2
    print("✅ Keep-alives counted and never dispatched")


def test_multiline_data_is_joined():
    parser = SSEParser()
    frames = parser.feed(b"data: line1\ndata: line2\nid: 7\nretry: 100\n\n")
    assert frames == [SSEFrame(data="line1\nline2")]


def test_bare_json_lines_are_frames():
    print("🧪 Testing unframed JSON lines")
    frames = _parse(b'{"a": 1}\n{"b": 2}\n', 4)
    assert [f.data for f in frames] == ['{"a": 1}', '{"b": 2}']
    print("✅ Each bare JSON line became a frame")


def test_flush_dispatches_unterminated_event():
    parser = SSEParser()
    assert parser.feed(b"data: tail") == []
    assert parser.flush() == [SSEFrame(data="tail")]
    assert parser.flush() == []


if __name__ == "__main__":
    test_chunking_does_not_change_frames()
    test_split_utf8_character_is_reassembled()
    test_crlf_split_between_chunks()
    test_keepalive_comments_are_skipped()
    test_multiline_data_is_joined()
    test_bare_json_lines_are_frames()
    test_flush_dispatches_unterminated_event()
