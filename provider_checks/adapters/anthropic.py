from __future__ import annotations

import json
from typing import Any, Mapping

import httpx

from provider_checks.adapters.base import (
    ProtocolAdapter,
    build_headers,
    derive_base_url,
    error_message_from_payload,
    inject_metadata,
    is_event_stream,
    open_stream,
)
from provider_checks.adapters.event_stream import aiter_json_payloads, parse_json_body
from provider_checks.adapters.openai_compat import parse_model_directive
from provider_checks.adapters.registry import register_adapter
from provider_checks.common_check import Challenge, Deadline, ProviderConfig
from provider_checks.errors import ProtocolError


ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def _raise_for_error(payload: Mapping[str, Any]) -> None:
    if payload.get("type") == "error" or payload.get("error"):
        message = error_message_from_payload(payload) or "upstream error"
        raise ProtocolError(f"stream error: {message}", response_body=json.dumps(payload, ensure_ascii=False)[:4000])


def text_from_event(payload: Mapping[str, Any]) -> str:
    kind = payload.get("type")
    if kind == "content_block_delta":
        delta = payload.get("delta")
        if isinstance(delta, Mapping) and delta.get("type") == "text_delta":
            return str(delta.get("text") or "")
        return ""
    if kind == "content_block_start":
        block = payload.get("content_block")
        if isinstance(block, Mapping) and block.get("type") == "text":
            return str(block.get("text") or "")
        return ""
    if kind == "message" or "content" in payload:
        # Non-stream Messages body.
        parts = []
        for block in payload.get("content") or []:
            if isinstance(block, Mapping) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts)
    return ""


@register_adapter("anthropic")
class AnthropicAdapter(ProtocolAdapter):
    provider_type = "anthropic"

    def build_request(self, config: ProviderConfig, challenge: Challenge) -> tuple[str, dict[str, str], dict[str, Any]]:
        base_url = derive_base_url(config.resolved_endpoint)
        # Reasoning effort is not an Anthropic option; only the model id survives.
        model_id = parse_model_directive(config.model).model_id
        body: dict[str, Any] = {
            "model": model_id,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": challenge.prompt}],
            "stream": True,
        }
        headers = build_headers(
            config,
            {
                "x-api-key": config.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
        )
        return f"{base_url}/messages", headers, inject_metadata(body, config.metadata)

    async def execute(self, config: ProviderConfig, challenge: Challenge, deadline: Deadline) -> str:
        url, headers, body = self.build_request(config, challenge)
        base_url = derive_base_url(config.resolved_endpoint)

        async with self._clients.lease(base_url, config.api_key) as client:
            async with open_stream(client, url, headers=headers, body=body, deadline=deadline) as response:
                if is_event_stream(response):
                    return await self._read_stream(response)
                raw = await response.aread()
                return self._read_body(raw.decode("utf-8", errors="replace"))

    async def _read_stream(self, response: httpx.Response) -> str:
        collected = ""
        async for payload in aiter_json_payloads(response.aiter_bytes()):
            if not isinstance(payload, Mapping):
                continue
            _raise_for_error(payload)
            collected += text_from_event(payload)
        return collected

    def _read_body(self, text: str) -> str:
        payloads = [p for p in parse_json_body(text) if isinstance(p, Mapping)]
        if not payloads and text.strip():
            raise ProtocolError("malformed response body", response_body=text[:4000])
        collected = ""
        for payload in payloads:
            _raise_for_error(payload)
            collected += text_from_event(payload)
        return collected
