from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from provider_checks import __version__


ProviderType = Literal["openai", "anthropic", "gemini"]
HealthStatus = Literal["operational", "degraded", "validation_failed", "failed", "error"]
OfficialHealthStatus = Literal["operational", "degraded", "down", "unknown"]

PROVIDER_TYPES: tuple[str, ...] = ("openai", "anthropic", "gemini")
HEALTH_STATUSES: tuple[str, ...] = ("operational", "degraded", "validation_failed", "failed", "error")
# Statuses that mean "the model answered correctly"; degraded is slow, not down.
AVAILABLE_STATUSES = frozenset({"operational", "degraded"})

DEFAULT_ENDPOINTS: dict[str, str] = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "anthropic": "https://api.anthropic.com/v1/messages",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/models",
}

DEFAULT_TIMEOUT_SECONDS = 45.0
DEFAULT_DEGRADED_THRESHOLD_MS = 6000
DEFAULT_PING_TIMEOUT_SECONDS = 5.0

USER_AGENT = f"provider-monitor/{__version__}"
TIMEOUT_MESSAGE = "request timed out"
EMPTY_REPLY_MESSAGE = "empty reply"

_WHITESPACE_RE = re.compile(r"\s+")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize_message(text: Any, *, max_len: int = 200) -> str:
    """Collapse whitespace and cap length so vendor bodies stay log/UI friendly."""
    s = _WHITESPACE_RE.sub(" ", str(text or "")).strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - 3].rstrip() + "..."


@dataclass(frozen=True)
class ProviderConfig:
    id: str
    name: str
    type: str
    api_key: str = field(repr=False)
    model: str
    group_name: str | None = None
    endpoint: str | None = None
    request_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def resolved_endpoint(self) -> str:
        explicit = (self.endpoint or "").strip()
        if explicit:
            return explicit
        return DEFAULT_ENDPOINTS.get(self.type, "")


@dataclass(frozen=True)
class Challenge:
    prompt: str
    expected_answer: str


@dataclass(frozen=True)
class CheckResult:
    id: str
    name: str
    type: str
    endpoint: str
    model: str
    status: str
    latency_ms: int | None
    ping_latency_ms: int | None
    checked_at: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CheckResult:
        def _opt_int(value: Any) -> int | None:
            if value is None:
                return None
            return int(value)

        status = str(raw.get("status") or "error")
        if status not in HEALTH_STATUSES:
            raise ValueError(f"Unknown check status: {status!r}")
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            type=str(raw.get("type") or ""),
            endpoint=str(raw.get("endpoint") or ""),
            model=str(raw.get("model") or ""),
            status=status,
            latency_ms=_opt_int(raw.get("latency_ms")),
            ping_latency_ms=_opt_int(raw.get("ping_latency_ms")),
            checked_at=str(raw["checked_at"]),
            message=str(raw.get("message") or ""),
        )

    @property
    def checked_at_ts(self) -> float:
        s = self.checked_at
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()


@dataclass(frozen=True)
class OfficialStatusResult:
    status: str
    message: str
    checked_at: str
    affected_components: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Deadline:
    """A monotonic expiry shared by every step of one provider check."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(expires_at=time.monotonic() + max(0.0, float(seconds)))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0
