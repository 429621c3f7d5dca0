from __future__ import annotations

import json
import os
import threading
import time
from bisect import bisect_left, insort
from pathlib import Path
from typing import Any, Iterable, Protocol

import structlog

from provider_checks.common_check import AVAILABLE_STATUSES, CheckResult


logger = structlog.get_logger(__name__)

HistorySnapshot = dict[str, list[CheckResult]]

DEFAULT_RETENTION_DAYS = 30.0
DEFAULT_MAX_PER_PROVIDER = 5000
AVAILABILITY_PERIODS_DAYS: dict[str, int] = {"7d": 7, "15d": 15, "30d": 30}


class HistoryCollaborator(Protocol):
    def append_history(self, results: Iterable[CheckResult]) -> HistorySnapshot: ...

    def snapshot(self) -> HistorySnapshot: ...


def coerce_history(raw: Any) -> HistorySnapshot:
    """
    Best-effort decode for history loaded from disk.
    Ignores invalid entries to be robust to partial writes or older formats.
    """
    if not isinstance(raw, dict):
        return {}
    items_by_provider = raw.get("providers", raw)
    if not isinstance(items_by_provider, dict):
        return {}

    out: HistorySnapshot = {}
    for provider_id, items in items_by_provider.items():
        if not isinstance(provider_id, str) or not provider_id:
            continue
        if not isinstance(items, list):
            continue

        results: list[CheckResult] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                result = CheckResult.from_dict(item)
                ts = result.checked_at_ts
            except (KeyError, TypeError, ValueError):
                continue
            if ts > 0:
                results.append(result)

        results.sort(key=lambda r: r.checked_at_ts)
        if results:
            out[provider_id] = results
    return out


def append_result(history: HistorySnapshot, result: CheckResult) -> None:
    items = history.setdefault(result.id, [])
    ts = result.checked_at_ts

    # Normal case: results arrive in time order. A clock jump falls back to sorted insert.
    if not items or items[-1].checked_at_ts <= ts:
        items.append(result)
        return
    idx = bisect_left([r.checked_at_ts for r in items], ts)
    items.insert(idx, result)


def prune_history(history: HistorySnapshot, *, before_ts: float, max_per_provider: int | None = None) -> None:
    cutoff = float(before_ts)
    for provider_id in list(history.keys()):
        items = history.get(provider_id) or []
        idx = bisect_left([r.checked_at_ts for r in items], cutoff)
        kept = items[idx:]
        if max_per_provider is not None and len(kept) > max_per_provider:
            kept = kept[-max_per_provider:]
        if kept:
            history[provider_id] = kept
        else:
            del history[provider_id]


def window_results(items: list[CheckResult], *, since_ts: float) -> list[CheckResult]:
    if not items:
        return []
    idx = bisect_left([r.checked_at_ts for r in items], float(since_ts))
    return items[idx:]


def compute_availability(items: list[CheckResult]) -> tuple[int, int, float | None]:
    """
    Returns (total, available_count, available_percent_or_None_if_total_0).
    Degraded counts as available: the answer was right, only slow.
    """
    total = len(items)
    if total <= 0:
        return 0, 0, None
    ok_count = sum(1 for r in items if r.status in AVAILABLE_STATUSES)
    return total, ok_count, round((ok_count / float(total)) * 100.0, 2)


def availability_stats(history: HistorySnapshot, *, now_ts: float | None = None) -> dict[str, dict[str, Any]]:
    now = time.time() if now_ts is None else float(now_ts)
    out: dict[str, dict[str, Any]] = {}
    for provider_id, items in history.items():
        periods: dict[str, Any] = {}
        for label, days in AVAILABILITY_PERIODS_DAYS.items():
            total, ok_count, pct = compute_availability(window_results(items, since_ts=now - days * 86400.0))
            periods[label] = {"total_checks": total, "operational_count": ok_count, "availability_pct": pct}
        out[provider_id] = periods
    return out


def latency_percentile_ms(items: list[CheckResult], percentile: float) -> float | None:
    values: list[int] = []
    for r in items:
        if r.latency_ms is not None:
            insort(values, r.latency_ms)
    if not values:
        return None
    p = min(100.0, max(0.0, float(percentile)))
    # Nearest-rank method.
    k = int(round((p / 100.0) * (len(values) - 1)))
    return float(values[k])


class InMemoryHistoryStore:
    """Append-only history kept in process memory."""

    def __init__(
        self,
        *,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        max_per_provider: int = DEFAULT_MAX_PER_PROVIDER,
    ) -> None:
        self.retention_seconds = max(1.0, float(retention_days)) * 86400.0
        self.max_per_provider = max(1, int(max_per_provider))
        self._history: HistorySnapshot = {}
        self._lock = threading.Lock()

    def _copy(self) -> HistorySnapshot:
        return {provider_id: list(items) for provider_id, items in self._history.items()}

    def snapshot(self) -> HistorySnapshot:
        with self._lock:
            return self._copy()

    def append_history(self, results: Iterable[CheckResult]) -> HistorySnapshot:
        with self._lock:
            for result in results:
                append_result(self._history, result)
            prune_history(
                self._history,
                before_ts=time.time() - self.retention_seconds,
                max_per_provider=self.max_per_provider,
            )
            self._persist()
            return self._copy()

    def _persist(self) -> None:
        return None


class JsonHistoryStore(InMemoryHistoryStore):
    """History persisted to a single JSON file, rewritten atomically after every append."""

    def __init__(self, path: str | Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path)
        self._history = self._load()

    def _load(self) -> HistorySnapshot:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("history_load_failed", path=str(self.path), error=str(e))
            return {}
        history = coerce_history(raw)
        logger.info(
            "history_loaded",
            path=str(self.path),
            providers=len(history),
            records=sum(len(items) for items in history.values()),
        )
        return history

    def _persist(self) -> None:
        payload = {
            "version": 1,
            "providers": {pid: [r.to_dict() for r in items] for pid, items in self._history.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)


def build_history_store(
    path: str | None,
    *,
    retention_days: float = DEFAULT_RETENTION_DAYS,
    max_per_provider: int = DEFAULT_MAX_PER_PROVIDER,
) -> InMemoryHistoryStore:
    if path:
        return JsonHistoryStore(path, retention_days=retention_days, max_per_provider=max_per_provider)
    return InMemoryHistoryStore(retention_days=retention_days, max_per_provider=max_per_provider)
