"""Vendor-reported status, shown next to the synthetic checks for comparison.

OpenAI and Anthropic publish a Statuspage ``summary.json``. Gemini has no
Statuspage; Google Cloud's ``incidents.json`` filtered to the "Vertex Gemini API"
product is used instead.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import httpx
import structlog

from provider_checks.common_check import USER_AGENT, OfficialStatusResult, sanitize_message, utc_now_iso


logger = structlog.get_logger(__name__)

OFFICIAL_STATUS_TIMEOUT_SECONDS = 15.0

GOOGLE_CLOUD_INCIDENTS_URL = "https://status.cloud.google.com/incidents.json"
GEMINI_PRODUCT_TITLE = "Vertex Gemini API"

STATUSPAGE_SUMMARY_URLS: dict[str, str] = {
    "openai": "https://status.openai.com/api/v2/summary.json",
    "anthropic": "https://status.anthropic.com/api/v2/summary.json",
}

_INDICATOR_STATUS: dict[str, str] = {
    "none": "operational",
    "minor": "degraded",
    "major": "down",
    "critical": "down",
}


def _parse_ts(value: Any) -> float | None:
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _is_gemini_incident(incident: Mapping[str, Any]) -> bool:
    products = incident.get("affected_products")
    if not isinstance(products, list):
        return False
    for product in products:
        if isinstance(product, Mapping) and product.get("title") == GEMINI_PRODUCT_TITLE:
            return True
    return False


def _is_active_incident(incident: Mapping[str, Any], *, now_ts: float) -> bool:
    end = incident.get("end")
    if end is None:
        return True
    end_ts = _parse_ts(end)
    return end_ts is not None and end_ts > now_ts


def incident_status(incidents: list[Mapping[str, Any]]) -> str:
    # status_impact wins over severity when both are present.
    for incident in incidents:
        impact = str(incident.get("status_impact") or "").upper()
        if "OUTAGE" in impact:
            return "down"
        if "DISRUPTION" in impact:
            continue
        if str(incident.get("severity") or "").lower() == "high":
            return "down"
    return "degraded"


def summarize_google_incidents(data: Any, *, now_ts: float | None = None) -> OfficialStatusResult:
    now = datetime.now(timezone.utc).timestamp() if now_ts is None else float(now_ts)
    incidents = [i for i in data if isinstance(i, Mapping)] if isinstance(data, list) else []
    active = [i for i in incidents if _is_gemini_incident(i) and _is_active_incident(i, now_ts=now)]
    if not active:
        return OfficialStatusResult(status="operational", message="all systems operational", checked_at=utc_now_iso())

    numbers = [str(i["number"]) for i in active if i.get("number") is not None][:3]
    suffix = "..." if len(active) > 3 else ""
    if numbers:
        message = f"Google Cloud reports {GEMINI_PRODUCT_TITLE} incidents: {', '.join(numbers)}{suffix}"
    else:
        message = f"Google Cloud reports an ongoing {GEMINI_PRODUCT_TITLE} incident"
    return OfficialStatusResult(
        status=incident_status(active),
        message=message,
        checked_at=utc_now_iso(),
        affected_components=[GEMINI_PRODUCT_TITLE],
    )


def summarize_statuspage(data: Any) -> OfficialStatusResult:
    if not isinstance(data, Mapping):
        return OfficialStatusResult(status="unknown", message="malformed status payload", checked_at=utc_now_iso())

    status_block = data.get("status") if isinstance(data.get("status"), Mapping) else {}
    indicator = str(status_block.get("indicator") or "").lower()
    description = sanitize_message(status_block.get("description") or "")
    status = _INDICATOR_STATUS.get(indicator, "unknown")

    affected: list[str] = []
    components = data.get("components")
    for component in components if isinstance(components, list) else []:
        if not isinstance(component, Mapping):
            continue
        if component.get("status") not in (None, "operational"):
            name = str(component.get("name") or "").strip()
            if name:
                affected.append(name)

    if status == "operational":
        return OfficialStatusResult(
            status=status,
            message=description or "all systems operational",
            checked_at=utc_now_iso(),
        )
    return OfficialStatusResult(
        status=status,
        message=description or f"status indicator: {indicator or 'missing'}",
        checked_at=utc_now_iso(),
        affected_components=affected or None,
    )


_CHECKS: dict[str, tuple[str, Callable[[Any], OfficialStatusResult]]] = {
    "gemini": (GOOGLE_CLOUD_INCIDENTS_URL, summarize_google_incidents),
    "openai": (STATUSPAGE_SUMMARY_URLS["openai"], summarize_statuspage),
    "anthropic": (STATUSPAGE_SUMMARY_URLS["anthropic"], summarize_statuspage),
}


async def _fetch_json(client: httpx.AsyncClient, url: str, timeout_seconds: float) -> Any:
    response = await client.get(
        url,
        headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        timeout=timeout_seconds,
    )
    if response.status_code < 200 or response.status_code >= 300:
        raise httpx.HTTPStatusError(f"HTTP {response.status_code}", request=response.request, response=response)
    return response.json()


async def check_status(
    provider_type: str,
    client: httpx.AsyncClient | None = None,
    *,
    timeout_seconds: float = OFFICIAL_STATUS_TIMEOUT_SECONDS,
) -> OfficialStatusResult:
    """Fetch and classify the vendor's own status page. Never raises."""
    entry = _CHECKS.get(provider_type)
    if entry is None:
        return OfficialStatusResult(status="unknown", message="no official status source", checked_at=utc_now_iso())
    url, summarize = entry

    try:
        if client is not None:
            data = await _fetch_json(client, url, timeout_seconds)
        else:
            async with httpx.AsyncClient(follow_redirects=True) as own_client:
                data = await _fetch_json(own_client, url, timeout_seconds)
        return summarize(data)
    except asyncio.CancelledError:
        raise
    except httpx.TimeoutException:
        logger.warning("official_status_timeout", provider_type=provider_type, url=url)
        return OfficialStatusResult(status="unknown", message="status check timed out", checked_at=utc_now_iso())
    except httpx.HTTPStatusError as e:
        logger.warning("official_status_http_error", provider_type=provider_type, status_code=e.response.status_code)
        return OfficialStatusResult(status="unknown", message=str(e), checked_at=utc_now_iso())
    except Exception as e:  # noqa: BLE001
        logger.warning("official_status_failed", provider_type=provider_type, error=type(e).__name__)
        return OfficialStatusResult(status="unknown", message="status check failed", checked_at=utc_now_iso())


async def check_all(provider_types: list[str], client: httpx.AsyncClient | None = None) -> dict[str, OfficialStatusResult]:
    unique = sorted(set(provider_types))
    results = await asyncio.gather(*(check_status(t, client) for t in unique))
    return dict(zip(unique, results))
