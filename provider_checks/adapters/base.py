from __future__ import annotations

import abc
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

import httpx

from provider_checks.client_cache import ClientCache
from provider_checks.common_check import TIMEOUT_MESSAGE, USER_AGENT, Challenge, Deadline, ProviderConfig
from provider_checks.errors import CheckTimeoutError, ProtocolError, TransportError


# Body keys the adapter owns; metadata may not replace them.
RESERVED_BODY_KEYS = frozenset({"model", "prompt", "messages", "abortSignal"})

_API_PATH_SUFFIX_RE = re.compile(r"/(chat/completions|responses|messages)/?$")
_RESPONSES_PATH_RE = re.compile(r"/responses/?$")
_ERROR_BODY_MAX_CHARS = 4000


def derive_base_url(endpoint: str) -> str:
    """Turn a full endpoint (``.../v1/chat/completions?x=1``) into its base URL."""
    without_query = (endpoint or "").strip().split("?", 1)[0]
    return _API_PATH_SUFFIX_RE.sub("", without_query)


def is_responses_endpoint(endpoint: str | None) -> bool:
    if not endpoint:
        return False
    without_query = endpoint.strip().split("?", 1)[0]
    return bool(_RESPONSES_PATH_RE.search(without_query))


def inject_metadata(body: dict[str, Any], metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    if not metadata:
        return body
    merged = dict(body)
    for key, value in metadata.items():
        if key in RESERVED_BODY_KEYS:
            continue
        merged[key] = value
    return merged


def build_headers(config: ProviderConfig, forced: Mapping[str, str]) -> dict[str, str]:
    """User-Agent, then the provider's custom headers, then headers nobody may override."""
    headers: dict[str, str] = {"User-Agent": USER_AGENT}
    for key, value in (config.request_headers or {}).items():
        headers[str(key)] = str(value)
    lowered = {k.lower() for k in forced}
    headers = {k: v for k, v in headers.items() if k.lower() not in lowered}
    headers.update(forced)
    return headers


def request_timeout(deadline: Deadline) -> httpx.Timeout:
    remaining = max(0.001, deadline.remaining())
    return httpx.Timeout(remaining, connect=min(remaining, 15.0))


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    body: Mapping[str, Any],
    deadline: Deadline,
) -> AsyncIterator[httpx.Response]:
    """POST ``body`` and yield the streaming response.

    Translates httpx failures into the check error taxonomy. Leaving the context
    (normally, on error, or on cancellation) closes the stream.
    """
    if deadline.expired:
        raise CheckTimeoutError(TIMEOUT_MESSAGE)
    try:
        async with client.stream(
            "POST",
            url,
            headers=dict(headers),
            json=dict(body),
            timeout=request_timeout(deadline),
        ) as response:
            if not response.is_success:
                raw = await response.aread()
                text = raw.decode("utf-8", errors="replace")[:_ERROR_BODY_MAX_CHARS]
                raise ProtocolError(
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                    response_body=text,
                )
            yield response
    except httpx.TimeoutException as e:
        raise CheckTimeoutError(TIMEOUT_MESSAGE) from e
    except httpx.TransportError as e:
        raise TransportError(str(e) or type(e).__name__) from e


def content_type(response: httpx.Response) -> str:
    return (response.headers.get("content-type") or "").lower()


def is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in content_type(response)


def error_message_from_payload(payload: Mapping[str, Any]) -> str | None:
    """Best-effort ``error.message`` lookup across vendor error shapes."""
    err = payload.get("error")
    if err is None:
        return None
    if isinstance(err, Mapping):
        for key in ("message", "type", "status", "code"):
            value = err.get(key)
            if value:
                return str(value)
        return "upstream error"
    return str(err)


class ProtocolAdapter(abc.ABC):
    """Executes one single-turn call under a deadline and returns the reply text."""

    provider_type: str = ""

    def __init__(self, clients: ClientCache) -> None:
        self._clients = clients

    @abc.abstractmethod
    async def execute(self, config: ProviderConfig, challenge: Challenge, deadline: Deadline) -> str:
        raise NotImplementedError
