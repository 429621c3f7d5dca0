from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from pathlib import Path

from provider_checks.common_check import CheckResult
from provider_checks.history import (
    InMemoryHistoryStore,
    JsonHistoryStore,
    availability_stats,
    coerce_history,
    compute_availability,
    latency_percentile_ms,
)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _result(provider_id: str, ts: float, status: str = "operational", latency_ms: int | None = 100) -> CheckResult:
    return CheckResult(
        id=provider_id,
        name=provider_id.upper(),
        type="openai",
        endpoint="https://api.test/v1/chat/completions",
        model="m",
        status=status,
        latency_ms=latency_ms,
        ping_latency_ms=None,
        checked_at=_iso(ts),
        message="",
    )


def test_append_keeps_time_order_even_for_late_results() -> None:
    now = time.time()
    store = InMemoryHistoryStore()
    store.append_history([_result("a", now - 30), _result("a", now - 10)])
    snapshot = store.append_history([_result("a", now - 20)])

    stamps = [r.checked_at_ts for r in snapshot["a"]]
    assert stamps == sorted(stamps)
    assert len(stamps) == 3


def test_append_returns_a_copy() -> None:
    store = InMemoryHistoryStore()
    snapshot = store.append_history([_result("a", time.time())])
    snapshot["a"].clear()
    assert len(store.snapshot()["a"]) == 1


def test_retention_and_cap_pruning() -> None:
    now = time.time()
    store = InMemoryHistoryStore(retention_days=30, max_per_provider=3)
    snapshot = store.append_history(
        [_result("old", now - 31 * 86400)] + [_result("a", now - i) for i in range(5, 0, -1)]
    )

    assert "old" not in snapshot
    assert len(snapshot["a"]) == 3
    assert snapshot["a"][-1].checked_at_ts > snapshot["a"][0].checked_at_ts


def test_availability_counts_degraded_as_available() -> None:
    now = time.time()
    items = [
        _result("a", now - 40, "operational"),
        _result("a", now - 30, "degraded"),
        _result("a", now - 20, "validation_failed"),
        _result("a", now - 10, "error"),
    ]
    assert compute_availability(items) == (4, 2, 50.0)
    assert compute_availability([]) == (0, 0, None)

    stats = availability_stats({"a": items}, now_ts=now)
    assert stats["a"]["7d"] == {"total_checks": 4, "operational_count": 2, "availability_pct": 50.0}
    assert set(stats["a"]) == {"7d", "15d", "30d"}


def test_availability_windows() -> None:
    now = time.time()
    items = [_result("a", now - 10 * 86400, "error"), _result("a", now - 60, "operational")]
    stats = availability_stats({"a": items}, now_ts=now)
    assert stats["a"]["7d"]["total_checks"] == 1
    assert stats["a"]["7d"]["availability_pct"] == 100.0
    assert stats["a"]["15d"]["total_checks"] == 2


def test_latency_percentile_ignores_missing_latency() -> None:
    now = time.time()
    items = [_result("a", now - i, latency_ms=v) for i, v in enumerate([100, 300, None, 200])]
    assert latency_percentile_ms(items, 50) == 200.0
    assert latency_percentile_ms(items, 100) == 300.0
    assert latency_percentile_ms([_result("a", now, latency_ms=None)], 50) is None


def test_json_store_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "state" / "history.json"
    now = time.time()

    store = JsonHistoryStore(path)
    store.append_history([_result("a", now - 5, "degraded"), _result("b", now - 1)])
    assert path.exists()
    assert not path.with_suffix(".json.tmp").exists()

    reloaded = JsonHistoryStore(path).snapshot()
    assert set(reloaded) == {"a", "b"}
    assert reloaded["a"][0].status == "degraded"
    assert reloaded["a"][0].checked_at == _iso(now - 5)


def test_json_store_tolerates_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")
    assert JsonHistoryStore(path).snapshot() == {}


def test_coerce_history_skips_invalid_entries() -> None:
    now = time.time()
    good = _result("a", now).to_dict()
    raw = {
        "version": 1,
        "providers": {
            "a": [good, {"id": "a"}, {**good, "status": "exploded"}, {**good, "checked_at": "yesterday"}, "junk"],
            "b": "not a list",
            "": [good],
        },
    }
    out = coerce_history(raw)
    assert list(out) == ["a"]
    assert len(out["a"]) == 1
    assert coerce_history(json.loads("[]")) == {}
