from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from provider_checks.adapters.base import (
    ProtocolAdapter,
    build_headers,
    derive_base_url,
    error_message_from_payload,
    inject_metadata,
    is_event_stream,
    is_responses_endpoint,
    open_stream,
)
from provider_checks.adapters.event_stream import aiter_json_payloads, parse_json_body
from provider_checks.adapters.registry import register_adapter
from provider_checks.common_check import Challenge, Deadline, ProviderConfig
from provider_checks.errors import ProtocolError


EFFORT_ALIASES: dict[str, str] = {
    "mini": "low",
    "minimal": "low",
    "low": "low",
    "medium": "medium",
    "high": "high",
}

# Reasoning models get "medium" unless the model string says otherwise.
REASONING_MODEL_HINTS = (
    re.compile(r"codex", re.IGNORECASE),
    re.compile(r"\bgpt-5", re.IGNORECASE),
    re.compile(r"\bo[1-9]", re.IGNORECASE),
    re.compile(r"deepseek-r1", re.IGNORECASE),
    re.compile(r"qwq", re.IGNORECASE),
)

_DIRECTIVE_RE = re.compile(r"^(.*?)[@#](mini|minimal|low|medium|high)$", re.IGNORECASE)


@dataclass(frozen=True)
class ModelDirective:
    model_id: str
    reasoning_effort: str | None = None


def parse_model_directive(model: str) -> ModelDirective:
    """Split ``"o3@high"`` / ``"o3#mini"`` into a model id and a reasoning effort."""
    trimmed = (model or "").strip()
    if not trimmed:
        return ModelDirective(model_id=model)

    match = _DIRECTIVE_RE.match(trimmed)
    if match:
        base, effort_raw = match.group(1), match.group(2)
        return ModelDirective(
            model_id=base.strip() or trimmed,
            reasoning_effort=EFFORT_ALIASES[effort_raw.lower()],
        )

    if any(hint.search(trimmed) for hint in REASONING_MODEL_HINTS):
        return ModelDirective(model_id=trimmed, reasoning_effort="medium")
    return ModelDirective(model_id=trimmed)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        # content-part arrays: [{"type": "text", "text": "..."}]
        return "".join(_as_text(p.get("text") if isinstance(p, Mapping) else p) for p in value)
    return str(value)


def _raise_for_error_payload(payload: Mapping[str, Any]) -> None:
    message = error_message_from_payload(payload)
    if message is not None:
        raise ProtocolError(
            f"stream error: {message}",
            response_body=json.dumps(payload, ensure_ascii=False)[:4000],
        )


def chat_text_from_payload(payload: Mapping[str, Any]) -> str:
    """Text carried by one Chat Completions chunk (stream delta or full message)."""
    parts: list[str] = []
    for choice in payload.get("choices") or []:
        if not isinstance(choice, Mapping):
            continue
        delta = choice.get("delta")
        if isinstance(delta, Mapping):
            parts.append(_as_text(delta.get("content")))
        message = choice.get("message")
        if isinstance(message, Mapping):
            parts.append(_as_text(message.get("content")))
        if "text" in choice:
            parts.append(_as_text(choice.get("text")))
    return "".join(parts)


def responses_text_from_output(response: Mapping[str, Any]) -> str:
    if isinstance(response.get("output_text"), str):
        return response["output_text"]
    parts: list[str] = []
    for item in response.get("output") or []:
        if not isinstance(item, Mapping):
            continue
        for content in item.get("content") or []:
            if isinstance(content, Mapping) and content.get("type") in {"output_text", "text"}:
                parts.append(_as_text(content.get("text")))
    return "".join(parts)


class _ResponsesAccumulator:
    """Collects text from Responses API stream events."""

    def __init__(self) -> None:
        self.deltas: list[str] = []
        self.final: str | None = None

    def add(self, event: Mapping[str, Any]) -> None:
        kind = str(event.get("type") or "")
        if not kind and event.get("error"):
            _raise_for_error_payload(event)
        if kind == "response.output_text.delta":
            self.deltas.append(_as_text(event.get("delta")))
        elif kind == "response.output_text.done":
            self.final = _as_text(event.get("text"))
        elif kind == "response.completed" and self.final is None:
            response = event.get("response")
            if isinstance(response, Mapping):
                text = responses_text_from_output(response)
                if text:
                    self.final = text
        elif kind in {"response.failed", "error"}:
            response = event.get("response")
            source = response if isinstance(response, Mapping) and response.get("error") else event
            message = error_message_from_payload(source) or str(event.get("message") or "response failed")
            raise ProtocolError(f"stream error: {message}", response_body=json.dumps(event, ensure_ascii=False)[:4000])
        elif "output" in event or "output_text" in event:
            # Non-stream Responses body.
            self.final = responses_text_from_output(event)

    @property
    def text(self) -> str:
        joined = "".join(self.deltas)
        if self.final and len(self.final) >= len(joined):
            return self.final
        return joined


@register_adapter("openai")
class OpenAICompatibleAdapter(ProtocolAdapter):
    provider_type = "openai"

    def build_request(self, config: ProviderConfig, challenge: Challenge) -> tuple[str, dict[str, str], dict[str, Any], bool]:
        endpoint = config.resolved_endpoint
        base_url = derive_base_url(endpoint)
        directive = parse_model_directive(config.model)
        responses_api = is_responses_endpoint(config.endpoint)

        body: dict[str, Any]
        if responses_api:
            url = f"{base_url}/responses"
            body = {"model": directive.model_id, "input": challenge.prompt, "stream": True}
            if directive.reasoning_effort:
                body["reasoning"] = {"effort": directive.reasoning_effort}
        else:
            url = f"{base_url}/chat/completions"
            body = {
                "model": directive.model_id,
                "messages": [{"role": "user", "content": challenge.prompt}],
                "stream": True,
            }
            if directive.reasoning_effort:
                body["reasoning_effort"] = directive.reasoning_effort

        headers = build_headers(
            config,
            {
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
        )
        return url, headers, inject_metadata(body, config.metadata), responses_api

    async def execute(self, config: ProviderConfig, challenge: Challenge, deadline: Deadline) -> str:
        url, headers, body, responses_api = self.build_request(config, challenge)
        base_url = derive_base_url(config.resolved_endpoint)

        async with self._clients.lease(base_url, config.api_key) as client:
            async with open_stream(client, url, headers=headers, body=body, deadline=deadline) as response:
                if is_event_stream(response):
                    return await self._read_stream(response, responses_api)
                raw = await response.aread()
                return self._read_body(raw.decode("utf-8", errors="replace"), responses_api)

    async def _read_stream(self, response: httpx.Response, responses_api: bool) -> str:
        if responses_api:
            acc = _ResponsesAccumulator()
            async for payload in aiter_json_payloads(response.aiter_bytes()):
                if isinstance(payload, Mapping):
                    acc.add(payload)
            return acc.text

        collected = ""
        async for payload in aiter_json_payloads(response.aiter_bytes()):
            if not isinstance(payload, Mapping):
                continue
            _raise_for_error_payload(payload)
            collected += chat_text_from_payload(payload)
        return collected

    def _read_body(self, text: str, responses_api: bool) -> str:
        payloads = [p for p in parse_json_body(text) if isinstance(p, Mapping)]
        if not payloads and text.strip():
            raise ProtocolError("malformed response body", response_body=text[:4000])

        if responses_api:
            acc = _ResponsesAccumulator()
            for payload in payloads:
                acc.add(payload)
            return acc.text

        collected = ""
        for payload in payloads:
            _raise_for_error_payload(payload)
            collected += chat_text_from_payload(payload)
        return collected
