"""Read-only JSON status API over the monitor's latest results and history."""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Response

from provider_checks import __version__
from provider_checks.history import availability_stats, latency_percentile_ms, window_results

from .config import active_notifications
from .runtime import MonitorRuntime


NOTIFICATIONS_CACHE_CONTROL = "public, max-age=60, stale-while-revalidate=300"


def create_app(runtime: MonitorRuntime, *, manage_runtime: bool = False) -> FastAPI:
    """Build the app. With ``manage_runtime`` the app starts and stops the runtime."""
    app = FastAPI(title="Provider Monitor", version=__version__)
    app.state.runtime = runtime

    if manage_runtime:

        @app.on_event("startup")
        async def _startup() -> None:
            await runtime.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            await runtime.aclose()

    def _require_provider(provider_id: str) -> None:
        if provider_id not in runtime.provider_ids():
            raise HTTPException(status_code=404, detail="provider_not_found")

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    @app.get("/api/status")
    async def status() -> dict[str, Any]:
        latest = sorted(runtime.poller.last_results.values(), key=lambda r: (r.name.lower(), r.id))
        return {
            "providers": [r.to_dict() for r in latest],
            "poller": runtime.poller.state(),
        }

    @app.get("/api/history/{provider_id}")
    async def history(provider_id: str, limit: int = Query(default=100, ge=1, le=5000)) -> dict[str, Any]:
        _require_provider(provider_id)
        items = runtime.history.snapshot().get(provider_id, [])
        recent = items[-limit:]
        day = window_results(items, since_ts=time.time() - 86400.0)
        return {
            "provider_id": provider_id,
            "count": len(recent),
            "latency_p50_ms_24h": latency_percentile_ms(day, 50),
            "latency_p95_ms_24h": latency_percentile_ms(day, 95),
            "results": [r.to_dict() for r in reversed(recent)],
        }

    @app.get("/api/availability")
    async def availability() -> dict[str, Any]:
        return {"providers": availability_stats(runtime.history.snapshot())}

    @app.get("/api/official-status")
    async def official_status() -> dict[str, Any]:
        if not runtime.config.official_status_enabled:
            raise HTTPException(status_code=404, detail="official_status_disabled")
        results = await runtime.official_status()
        return {"providers": {ptype: r.to_dict() for ptype, r in results.items()}}

    @app.get("/api/notifications")
    async def notifications(response: Response) -> list[dict[str, Any]]:
        response.headers["Cache-Control"] = NOTIFICATIONS_CACHE_CONTROL
        return [n.model_dump(mode="json") for n in active_notifications(runtime.config)]

    return app
