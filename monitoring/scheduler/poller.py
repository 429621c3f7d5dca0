"""Single-flight polling of every configured provider."""

import asyncio
import time
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from provider_checks.common_check import CheckResult
from provider_checks.history import HistoryCollaborator
from provider_checks.orchestrator import ProviderChecker

from ..config import MonitoringConfig, check_settings, provider_configs


logger = structlog.get_logger(__name__)


class Poller:
    """Runs one round of checks per tick; overlapping ticks are skipped, not queued."""

    def __init__(
        self,
        checker: ProviderChecker,
        history: HistoryCollaborator,
        config_loader: Callable[[], MonitoringConfig],
    ):
        self.checker = checker
        self.history = history
        self.config_loader = config_loader

        self.interval_seconds: Optional[int] = None
        self.last_results: Dict[str, CheckResult] = {}
        self.ticks = 0
        self.skipped_ticks = 0
        self.last_tick_at: Optional[datetime] = None
        self.next_tick_at: Optional[datetime] = None

        self._running = False
        self._tick_started: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    def seed(self, results: List[CheckResult]) -> None:
        """Prime ``last_results`` (e.g. from persisted history) before the first tick."""
        for result in results:
            self.last_results[result.id] = result

    async def tick(self) -> List[CheckResult]:
        if self._running:
            self.skipped_ticks += 1
            in_flight_ms = int((time.perf_counter() - (self._tick_started or time.perf_counter())) * 1000)
            logger.info("tick_skipped", in_flight_ms=in_flight_ms, skipped_ticks=self.skipped_ticks)
            return []

        self._running = True
        self._tick_started = time.perf_counter()
        started_at = datetime.now(timezone.utc)
        results: List[CheckResult] = []
        try:
            config = self.config_loader()
            self.interval_seconds = config.poll_interval_seconds

            configs = provider_configs(config)
            if not configs:
                logger.warning("no_providers_configured", check_groups=config.check_groups)
                return []

            settings = check_settings(config)
            outcomes = await asyncio.gather(
                *(self.checker.check(c, settings) for c in configs),
                return_exceptions=True,
            )
            for provider, outcome in zip(configs, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("provider_check_raised", provider_id=provider.id, error=type(outcome).__name__)
                    continue
                results.append(outcome)

            # File-backed stores rewrite the whole file; keep that off the event loop.
            snapshot = await asyncio.to_thread(self.history.append_history, results)
            for result in results:
                self.last_results[result.id] = result
            logger.info(
                "history_appended",
                providers=len(snapshot),
                records=sum(len(items) for items in snapshot.values()),
            )
        except Exception as e:
            logger.exception("tick_failed", error=str(e))
        finally:
            self.ticks += 1
            self.last_tick_at = started_at
            if self.interval_seconds:
                self.next_tick_at = started_at + timedelta(seconds=self.interval_seconds)
            self._running = False
            self._tick_started = None
            logger.info(
                "tick_completed",
                checked=len(results),
                statuses=dict(Counter(r.status for r in results)),
                elapsed_ms=int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000),
                next_tick_at=self.next_tick_at.isoformat() if self.next_tick_at else None,
            )
        return results

    def state(self) -> Dict[str, object]:
        return {
            "running": self._running,
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "interval_seconds": self.interval_seconds,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "next_tick_at": self.next_tick_at.isoformat() if self.next_tick_at else None,
        }


class PollerService:
    """Drives ``Poller.tick`` on an APScheduler interval job."""

    JOB_ID = "provider_poll"

    def __init__(self, poller: Poller, interval_seconds: int):
        self.poller = poller
        self.interval_seconds = max(1, int(interval_seconds))
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.running = False

    async def start(self):
        """Start ticking; the first tick runs immediately."""
        if self.running:
            logger.warning("poller_already_running")
            return

        # max_instances=2 lets an overlapping fire reach the poller, which then skips it.
        self.scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Provider health checks",
            next_run_time=datetime.now(timezone.utc),
            max_instances=2,
            coalesce=False,
            misfire_grace_time=None,
            replace_existing=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info("poller_started", interval_seconds=self.interval_seconds)

    async def stop(self):
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("poller_stopped")

    async def _run_tick(self):
        await self.poller.tick()
        self._apply_interval(self.poller.interval_seconds)

    def _apply_interval(self, interval_seconds: Optional[int]):
        if not interval_seconds or interval_seconds == self.interval_seconds:
            return
        previous, self.interval_seconds = self.interval_seconds, int(interval_seconds)
        if self.running:
            self.scheduler.reschedule_job(self.JOB_ID, trigger=IntervalTrigger(seconds=self.interval_seconds))
        logger.info("poll_interval_changed", previous_seconds=previous, interval_seconds=self.interval_seconds)
