"""Gemini over its own v1beta REST protocol (no OpenAI compatibility layer)."""

from __future__ import annotations

import json
from typing import Any, Mapping

import httpx
import structlog

from provider_checks.adapters.base import (
    ProtocolAdapter,
    build_headers,
    error_message_from_payload,
    is_event_stream,
    open_stream,
)
from provider_checks.adapters.event_stream import aiter_json_payloads, merge_fragment, parse_json_body
from provider_checks.adapters.registry import register_adapter
from provider_checks.common_check import Challenge, Deadline, ProviderConfig
from provider_checks.errors import EmptyResponseError, ProtocolError


logger = structlog.get_logger(__name__)

STREAM_ACTION = ":streamGenerateContent"
GENERATE_ACTION = ":generateContent"
MAX_OUTPUT_TOKENS = 32


def resolve_gemini_url(endpoint: str, model: str) -> str:
    trimmed = (endpoint or "").strip()
    if STREAM_ACTION in trimmed or GENERATE_ACTION in trimmed:
        return trimmed

    base, sep, query = trimmed.partition("?")
    normalized = base.rstrip("/")
    if normalized.endswith("/v1beta/models"):
        resolved = f"{normalized}/{model}{STREAM_ACTION}"
        return f"{resolved}?{query}" if sep and query else resolved
    return trimmed


def non_stream_url(url: str) -> str:
    """Same resolved base, non-streaming action."""
    return url.replace(STREAM_ACTION, GENERATE_ACTION, 1)


def _leaf_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def extract_gemini_text(payload: Any) -> str:
    """Concatenate the text parts of every candidate in one response chunk."""
    if isinstance(payload, list):
        merged = ""
        for item in payload:
            merged = merge_fragment(merged, extract_gemini_text(item))
        return merged
    if not isinstance(payload, Mapping):
        return ""

    texts: list[str] = []
    for candidate in payload.get("candidates") or []:
        if not isinstance(candidate, Mapping):
            continue
        content = candidate.get("content")
        if not isinstance(content, Mapping):
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, Mapping) or "text" not in part:
                continue
            text = _leaf_text(part.get("text"))
            if text:
                texts.append(text)
    return "".join(texts)


def _raise_for_error(payload: Any, status_code: int | None = None) -> None:
    if isinstance(payload, Mapping) and payload.get("error"):
        message = error_message_from_payload(payload) or "upstream error"
        raise ProtocolError(
            f"gemini error: {message}",
            status_code=status_code,
            response_body=json.dumps(payload, ensure_ascii=False)[:4000],
        )


def collect_text(payloads: list[Any]) -> str:
    """Overlap-aware merge of text across a sequence of response chunks."""
    merged = ""
    for payload in payloads:
        _raise_for_error(payload)
        merged = merge_fragment(merged, extract_gemini_text(payload))
    return merged


@register_adapter("gemini")
class GeminiNativeAdapter(ProtocolAdapter):
    provider_type = "gemini"

    def build_request(self, config: ProviderConfig, challenge: Challenge) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = resolve_gemini_url(config.resolved_endpoint, config.model)
        headers = build_headers(
            config,
            {
                "Authorization": f"Bearer {config.api_key}",
                "x-goog-api-key": config.api_key,
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
            },
        )
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": challenge.prompt}]}],
            "generationConfig": {"temperature": 0, "maxOutputTokens": MAX_OUTPUT_TOKENS},
        }
        return url, headers, body

    async def execute(self, config: ProviderConfig, challenge: Challenge, deadline: Deadline) -> str:
        url, headers, body = self.build_request(config, challenge)
        base_url = url.split("?", 1)[0]

        async with self._clients.lease(base_url, config.api_key) as client:
            text = await self._attempt(client, url, headers, body, deadline)
            if text.strip():
                return text

            # Fixed two-attempt policy: one stream attempt, one non-stream attempt.
            fallback = non_stream_url(url)
            logger.info("gemini_stream_empty_retrying", provider_id=config.id, fallback_url=fallback.split("?", 1)[0])
            text = await self._attempt(client, fallback, headers, body, deadline)
            if text.strip():
                return text

        raise EmptyResponseError("no text in response after non-stream retry")

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        deadline: Deadline,
    ) -> str:
        async with open_stream(client, url, headers=headers, body=body, deadline=deadline) as response:
            if is_event_stream(response):
                merged = ""
                async for payload in aiter_json_payloads(response.aiter_bytes()):
                    _raise_for_error(payload, response.status_code)
                    merged = merge_fragment(merged, extract_gemini_text(payload))
                return merged

            raw = await response.aread()
            return collect_text(parse_json_body(raw.decode("utf-8", errors="replace")))
