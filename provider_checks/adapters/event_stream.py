"""Tolerant event-stream decoding shared by the protocol adapters.

Gateways in front of the vendors do not agree on framing: some send proper
Server-Sent Events, some send NDJSON, some stream a JSON array one element per
line. The parser accepts all of them and yields decoded JSON payloads.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterator

import structlog


logger = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
_IGNORED_FIELDS = ("event:", "id:", "retry:")


def merge_fragment(accumulated: str, fragment: str) -> str:
    """Merge a streamed text fragment into the text seen so far.

    Some gateways resend the full text on every event (cumulative), others send
    only the new piece (incremental). When one string is a prefix of the other,
    keep the longer one; otherwise append.
    """
    if not fragment:
        return accumulated
    if not accumulated:
        return fragment
    if fragment.startswith(accumulated):
        return fragment
    if accumulated.startswith(fragment):
        return accumulated
    return accumulated + fragment


def _is_json(raw: str) -> bool:
    try:
        json.loads(raw)
    except ValueError:
        return False
    return True


def decode_payload(raw: str) -> list[Any]:
    s = (raw or "").strip()
    if not s or s == DONE_SENTINEL:
        return []
    try:
        value = json.loads(s)
    except ValueError:
        logger.debug("event_stream_payload_undecodable", payload=s[:200])
        return []
    if value is None:
        return []
    if isinstance(value, list):
        return [item for item in value if item is not None]
    return [value]


def _strip_array_punctuation(line: str) -> str:
    s = line.strip()
    if s.startswith("[") or s.startswith(","):
        s = s[1:].lstrip()
    if s.endswith("]") or s.endswith(","):
        s = s[:-1].rstrip()
    return s


def _decode_bare_line(line: str) -> list[Any]:
    s = line.strip()
    if s in {"[", "]", ","}:
        return []
    try:
        value = json.loads(s)
    except ValueError:
        # Single-line element of a streamed JSON array: `[{...},` / `{...}]`.
        return decode_payload(_strip_array_punctuation(s))
    if value is None:
        return []
    if isinstance(value, list):
        return [item for item in value if item is not None]
    return [value]


class EventStreamParser:
    """Incremental decoder: feed text chunks, collect JSON payloads."""

    def __init__(self) -> None:
        self._buffer = ""
        self._data_lines: list[str] = []

    def feed(self, chunk: str) -> list[Any]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        out: list[Any] = []
        for line in lines:
            out.extend(self._handle_line(line.rstrip("\r")))
        return out

    def close(self) -> list[Any]:
        out: list[Any] = []
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            out.extend(self._handle_line(rest.rstrip("\r")))
        out.extend(self._flush())
        return out

    def _flush(self) -> list[Any]:
        if not self._data_lines:
            return []
        lines, self._data_lines = self._data_lines, []
        payload = "\n".join(lines)
        if len(lines) > 1 and not _is_json(payload):
            # Consecutive single-line events sent without the blank separator.
            out: list[Any] = []
            for line in lines:
                out.extend(decode_payload(line))
            return out
        return decode_payload(payload)

    def _handle_line(self, line: str) -> list[Any]:
        if not line.strip():
            return self._flush()

        if line.startswith("data:"):
            value = line[len("data:") :]
            if value.startswith(" "):
                value = value[1:]
            self._data_lines.append(value)
            return []

        if line.startswith(":") or line.startswith(_IGNORED_FIELDS):
            return []

        # Not SSE framing: treat as NDJSON / bare JSON.
        out = self._flush()
        out.extend(_decode_bare_line(line))
        return out


def iter_json_payloads(text: str) -> list[Any]:
    """Run the line scanner over a complete body."""
    parser = EventStreamParser()
    out = parser.feed(text or "")
    out.extend(parser.close())
    return out


async def aiter_json_payloads(chunks: AsyncIterator[bytes]) -> AsyncIterator[Any]:
    """Decode a byte stream incrementally, yielding payloads as they complete."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parser = EventStreamParser()
    async for chunk in chunks:
        for payload in parser.feed(decoder.decode(chunk)):
            yield payload
    for payload in parser.feed(decoder.decode(b"", final=True)):
        yield payload
    for payload in parser.close():
        yield payload


def parse_json_body(text: str) -> list[Any]:
    """Decode a non-stream body: whole-document JSON first, line scanner second."""
    try:
        value = json.loads(text)
    except ValueError:
        return iter_json_payloads(text)
    if value is None:
        return []
    if isinstance(value, list):
        return [item for item in value if item is not None]
    return [value]
