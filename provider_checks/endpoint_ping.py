from __future__ import annotations

import time
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from provider_checks.common_check import DEFAULT_PING_TIMEOUT_SECONDS, USER_AGENT


logger = structlog.get_logger(__name__)


def ping_target(url: str) -> str | None:
    """Return the origin (scheme + host) of ``url``, or None if it has no host."""
    s = (url or "").strip()
    if not s:
        return None
    try:
        parts = urlsplit(s)
    except ValueError:
        return None
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, "/", "", ""))


async def measure_endpoint_ping(
    url: str,
    *,
    timeout_seconds: float = DEFAULT_PING_TIMEOUT_SECONDS,
    client: httpx.AsyncClient | None = None,
) -> int | None:
    """Time a HEAD request to the endpoint's host.

    Any HTTP response counts as reachable; the status code is irrelevant. Returns
    elapsed milliseconds, or None when the host cannot be reached. Never raises:
    the ping is diagnostic only and must not affect the check it accompanies.
    """
    target = ping_target(url)
    if target is None:
        return None

    started = time.perf_counter()
    try:
        if client is not None:
            await client.head(target, timeout=timeout_seconds, follow_redirects=False)
        else:
            async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as own_client:
                await own_client.head(target, timeout=timeout_seconds, follow_redirects=False)
    except Exception as e:  # noqa: BLE001
        logger.debug("endpoint_ping_failed", target=target, error=type(e).__name__)
        return None
    return int(round((time.perf_counter() - started) * 1000.0))
