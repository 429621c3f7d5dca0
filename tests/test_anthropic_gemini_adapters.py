from __future__ import annotations

import json

import httpx
import pytest

from provider_checks.adapters import build_adapter
from provider_checks.adapters.gemini_native import extract_gemini_text, non_stream_url, resolve_gemini_url
from provider_checks.client_cache import ClientCache
from provider_checks.common_check import Challenge, Deadline, ProviderConfig
from provider_checks.errors import EmptyResponseError, ProtocolError


CHALLENGE = Challenge(prompt="12 + 30 = ?", expected_answer="42")


def _sse(*events: object) -> bytes:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode("utf-8")


def _anthropic_config(**overrides) -> ProviderConfig:
    values = {
        "id": "an",
        "name": "Claude",
        "type": "anthropic",
        "api_key": "ak-test",
        "model": "claude-3-5-haiku-latest",
        "endpoint": "https://anthropic.test/v1/messages",
    }
    values.update(overrides)
    return ProviderConfig(**values)


def _gemini_config(**overrides) -> ProviderConfig:
    values = {
        "id": "gm",
        "name": "Gemini",
        "type": "gemini",
        "api_key": "gk-test",
        "model": "gemini-2.0-flash",
        "endpoint": "https://gemini.test/v1beta/models",
    }
    values.update(overrides)
    return ProviderConfig(**values)


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


@pytest.mark.asyncio
async def test_anthropic_stream_collects_text_deltas() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        content = (
            b"event: message_start\n"
            + _sse({"type": "message_start", "message": {"id": "m1"}})
            + b"event: content_block_start\n"
            + _sse({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}})
            + _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "12 + 30 "}})
            + _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "= 42"}})
            + _sse({"type": "message_stop"})
        )
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content)

    adapter = build_adapter("anthropic", ClientCache(transport=httpx.MockTransport(handler)))
    text = await adapter.execute(_anthropic_config(model="claude-sonnet@high"), CHALLENGE, Deadline.after(5))

    assert text == "12 + 30 = 42"
    request = seen[0]
    assert str(request.url) == "https://anthropic.test/v1/messages"
    assert request.headers["x-api-key"] == "ak-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["model"] == "claude-sonnet"
    assert body["max_tokens"] == 4096
    assert body["messages"] == [{"role": "user", "content": "12 + 30 = ?"}]


@pytest.mark.asyncio
async def test_anthropic_error_event_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        content = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content)

    adapter = build_adapter("anthropic", ClientCache(transport=httpx.MockTransport(handler)))
    with pytest.raises(ProtocolError, match="Overloaded"):
        await adapter.execute(_anthropic_config(), CHALLENGE, Deadline.after(5))


@pytest.mark.asyncio
async def test_anthropic_non_stream_message_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"type": "message", "content": [{"type": "text", "text": "42"}]})

    adapter = build_adapter("anthropic", ClientCache(transport=httpx.MockTransport(handler)))
    assert await adapter.execute(_anthropic_config(), CHALLENGE, Deadline.after(5)) == "42"


def test_resolve_gemini_url() -> None:
    assert (
        resolve_gemini_url("https://gemini.test/v1beta/models", "gemini-2.0-flash")
        == "https://gemini.test/v1beta/models/gemini-2.0-flash:streamGenerateContent"
    )
    assert (
        resolve_gemini_url("https://gemini.test/v1beta/models/?alt=sse", "m")
        == "https://gemini.test/v1beta/models/m:streamGenerateContent?alt=sse"
    )
    explicit = "https://gemini.test/v1beta/models/x:generateContent"
    assert resolve_gemini_url(explicit, "m") == explicit
    assert non_stream_url("https://g.test/v1beta/models/m:streamGenerateContent?alt=sse") == (
        "https://g.test/v1beta/models/m:generateContent?alt=sse"
    )


def test_extract_gemini_text_joins_all_parts_and_candidates() -> None:
    payload = {
        "candidates": [
            {"content": {"parts": [{"text": "4"}, {"text": "2"}]}},
            {"content": {"parts": [{"functionCall": {}}]}},
        ]
    }
    assert extract_gemini_text(payload) == "42"
    assert extract_gemini_text({"candidates": [{"finishReason": "SAFETY"}]}) == ""
    assert extract_gemini_text([_candidate("4"), _candidate("2")]) == "42"


@pytest.mark.asyncio
async def test_gemini_stream_success_needs_one_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        content = _sse(_candidate("The answer"), _candidate("The answer is 42"))
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content)

    adapter = build_adapter("gemini", ClientCache(transport=httpx.MockTransport(handler)))
    text = await adapter.execute(_gemini_config(), CHALLENGE, Deadline.after(5))

    assert text == "The answer is 42"
    assert len(seen) == 1
    assert seen[0].url.path == "/v1beta/models/gemini-2.0-flash:streamGenerateContent"
    assert seen[0].headers["x-goog-api-key"] == "gk-test"
    assert seen[0].headers["authorization"] == "Bearer gk-test"
    body = json.loads(seen[0].content)
    assert body["contents"][0]["parts"][0]["text"] == "12 + 30 = ?"


@pytest.mark.asyncio
async def test_gemini_retries_once_without_streaming_after_empty_stream() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path.endswith(":streamGenerateContent"):
            content = _sse({"candidates": [{"content": {"parts": []}}]})
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content)
        return httpx.Response(200, json=_candidate("42"))

    adapter = build_adapter("gemini", ClientCache(transport=httpx.MockTransport(handler)))
    text = await adapter.execute(_gemini_config(), CHALLENGE, Deadline.after(5))

    assert text == "42"
    assert seen == [
        "/v1beta/models/gemini-2.0-flash:streamGenerateContent",
        "/v1beta/models/gemini-2.0-flash:generateContent",
    ]


@pytest.mark.asyncio
async def test_gemini_gives_up_after_exactly_two_attempts() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"candidates": []})

    adapter = build_adapter("gemini", ClientCache(transport=httpx.MockTransport(handler)))
    with pytest.raises(EmptyResponseError):
        await adapter.execute(_gemini_config(), CHALLENGE, Deadline.after(5))
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_gemini_does_not_retry_http_errors() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(429, json={"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}})

    adapter = build_adapter("gemini", ClientCache(transport=httpx.MockTransport(handler)))
    with pytest.raises(ProtocolError) as exc_info:
        await adapter.execute(_gemini_config(), CHALLENGE, Deadline.after(5))
    assert exc_info.value.status_code == 429
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_gemini_error_payload_in_stream_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        content = _sse({"error": {"code": 500, "message": "internal"}})
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content)

    adapter = build_adapter("gemini", ClientCache(transport=httpx.MockTransport(handler)))
    with pytest.raises(ProtocolError, match="internal"):
        await adapter.execute(_gemini_config(), CHALLENGE, Deadline.after(5))
