from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

import structlog

from provider_checks.adapters import build_adapter
from provider_checks.challenge import generate_challenge, validate_response
from provider_checks.client_cache import ClientCache
from provider_checks.common_check import (
    DEFAULT_DEGRADED_THRESHOLD_MS,
    DEFAULT_PING_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    EMPTY_REPLY_MESSAGE,
    TIMEOUT_MESSAGE,
    Challenge,
    CheckResult,
    Deadline,
    ProviderConfig,
    sanitize_message,
    utc_now_iso,
)
from provider_checks.endpoint_ping import measure_endpoint_ping
from provider_checks.errors import (
    CheckTimeoutError,
    ConfigurationError,
    EmptyResponseError,
    ProtocolError,
    TransportError,
)


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckSettings:
    """Tunables read at the start of every check."""

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    degraded_threshold_ms: int = DEFAULT_DEGRADED_THRESHOLD_MS
    ping_timeout_seconds: float = DEFAULT_PING_TIMEOUT_SECONDS


@dataclass(frozen=True)
class _Outcome:
    status: str
    latency_ms: int | None
    message: str


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000.0))


def describe_protocol_error(exc: ProtocolError) -> str:
    detail = ""
    if exc.response_body:
        detail = sanitize_message(exc.response_body, max_len=160)
    if exc.status_code is not None:
        base = f"upstream returned HTTP {exc.status_code}"
        return f"{base}: {detail}" if detail else base
    return sanitize_message(str(exc)) or "malformed upstream response"


def classify_error(exc: BaseException) -> tuple[str, str]:
    """Map a failure to (status, user-facing message). Never exposes class names."""
    if isinstance(exc, (CheckTimeoutError, asyncio.TimeoutError)):
        return "failed", TIMEOUT_MESSAGE
    if isinstance(exc, EmptyResponseError):
        return "failed", EMPTY_REPLY_MESSAGE
    if isinstance(exc, ProtocolError):
        return "error", describe_protocol_error(exc)
    if isinstance(exc, TransportError):
        cause = sanitize_message(str(exc), max_len=160) or "connection failed"
        return "error", f"network error: {cause}"
    if isinstance(exc, ConfigurationError):
        return "error", sanitize_message(str(exc))
    return "error", "unexpected error"


def _log_check(config: ProviderConfig, prompt: str, reply: str, expected: str, verdict: str) -> None:
    logger.info(
        "provider_check",
        provider_type=config.type,
        group=config.group_name or "default",
        provider=config.name,
        prompt=prompt.replace("\r", " ").replace("\n", " "),
        reply=sanitize_message(reply, max_len=300) or "(empty)",
        expected=expected,
        verdict=verdict,
    )


def grade_reply(
    text: str,
    expected_answer: str,
    latency_ms: int,
    *,
    degraded_threshold_ms: int,
) -> _Outcome:
    if not text.strip():
        return _Outcome("failed", latency_ms, EMPTY_REPLY_MESSAGE)

    validation = validate_response(text, expected_answer)
    if not validation.valid:
        got = ", ".join(validation.extracted_numbers) or "(no numbers)"
        return _Outcome(
            "validation_failed",
            latency_ms,
            sanitize_message(f"validation failed: expected {expected_answer}, got {got}"),
        )

    if latency_ms <= degraded_threshold_ms:
        return _Outcome("operational", latency_ms, f"verified ({latency_ms}ms)")
    return _Outcome("degraded", latency_ms, f"responded correctly but took {latency_ms}ms")


class ProviderChecker:
    """Runs one provider's full check and always returns a classified result."""

    def __init__(self, clients: ClientCache | None = None) -> None:
        self.clients = clients if clients is not None else ClientCache()

    async def check(self, config: ProviderConfig, settings: CheckSettings | None = None) -> CheckResult:
        settings = settings or CheckSettings()
        started = time.perf_counter()
        deadline = Deadline.after(settings.timeout_seconds)
        endpoint = config.resolved_endpoint

        ping_task = asyncio.create_task(
            measure_endpoint_ping(endpoint, timeout_seconds=settings.ping_timeout_seconds)
        )
        challenge = generate_challenge()

        try:
            outcome = await self._run(config, challenge, deadline, started, settings)
        except asyncio.CancelledError:
            ping_task.cancel()
            raise

        ping_latency_ms = await ping_task
        return CheckResult(
            id=config.id,
            name=config.name,
            type=config.type,
            endpoint=endpoint,
            model=config.model,
            status=outcome.status,
            latency_ms=outcome.latency_ms,
            ping_latency_ms=ping_latency_ms,
            checked_at=utc_now_iso(),
            message=outcome.message,
        )

    async def _run(
        self,
        config: ProviderConfig,
        challenge: Challenge,
        deadline: Deadline,
        started: float,
        settings: CheckSettings,
    ) -> _Outcome:
        try:
            adapter = build_adapter(config.type, self.clients)
            text = await asyncio.wait_for(
                adapter.execute(config, challenge, deadline),
                timeout=max(0.001, deadline.remaining()),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status, message = classify_error(e)
            if status == "error" and message == "unexpected error":
                logger.exception("provider_check_crashed", provider_id=config.id, provider=config.name)
            _log_check(config, challenge.prompt, "", challenge.expected_answer, f"{status}: {message}")
            # A reply arrived but carried no text: the round trip is still measurable.
            latency_ms = _elapsed_ms(started) if isinstance(e, EmptyResponseError) else None
            return _Outcome(status, latency_ms, message)

        latency_ms = _elapsed_ms(started)
        outcome = grade_reply(
            text,
            challenge.expected_answer,
            latency_ms,
            degraded_threshold_ms=settings.degraded_threshold_ms,
        )
        verdict = {"operational": "pass", "degraded": "pass", "validation_failed": "fail"}.get(outcome.status, "fail (empty reply)")
        _log_check(config, challenge.prompt, text, challenge.expected_answer, verdict)
        return outcome


async def check_provider(
    config: ProviderConfig,
    *,
    settings: CheckSettings | None = None,
    clients: ClientCache | None = None,
) -> CheckResult:
    """Check one provider. Without ``clients`` the check uses and closes its own client."""
    if clients is not None:
        return await ProviderChecker(clients).check(config, settings)
    cache = ClientCache(enabled=False)
    return await ProviderChecker(cache).check(config, settings)
