"""Process-scoped wiring: built once at startup, torn down on shutdown."""

import asyncio
import time
from typing import Callable, Dict, List, Optional

import httpx
import structlog

from provider_checks.client_cache import ClientCache
from provider_checks.common_check import CheckResult, OfficialStatusResult
from provider_checks.history import InMemoryHistoryStore, build_history_store
from provider_checks.official_status import check_all
from provider_checks.orchestrator import ProviderChecker

from .config import MonitoringConfig, provider_configs
from .scheduler import Poller, PollerService


logger = structlog.get_logger(__name__)

OFFICIAL_STATUS_TTL_SECONDS = 120.0


class MonitorRuntime:
    """Owns the client cache, history store, checker, poller and scheduler.

    Use as ``async with MonitorRuntime(config) as runtime:``; entering starts the
    scheduler (unless ``schedule=False``) and leaving stops it and closes every
    pooled HTTP client.
    """

    def __init__(
        self,
        config: MonitoringConfig,
        *,
        config_loader: Optional[Callable[[], MonitoringConfig]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        history: Optional[InMemoryHistoryStore] = None,
        schedule: bool = True,
    ):
        self.config = config
        self._config_loader = config_loader
        self._transport = transport
        self.schedule = schedule

        self.clients = ClientCache(enabled=config.reuse_clients, transport=transport)
        self.history = history if history is not None else build_history_store(
            config.history_path,
            retention_days=config.history_retention_days,
            max_per_provider=config.history_max_per_provider,
        )
        self.checker = ProviderChecker(self.clients)
        self.poller = Poller(self.checker, self.history, self._load_config)
        self.poller.seed(self._latest_from_history())
        self.service = PollerService(self.poller, config.poll_interval_seconds)

        self._official: Dict[str, OfficialStatusResult] = {}
        self._official_fetched_at: Optional[float] = None
        self._official_lock = asyncio.Lock()

    def _load_config(self) -> MonitoringConfig:
        if self._config_loader is not None:
            self.config = self._config_loader()
        return self.config

    def _latest_from_history(self) -> List[CheckResult]:
        return [items[-1] for items in self.history.snapshot().values() if items]

    def provider_ids(self) -> List[str]:
        ids = {p.id for p in self.config.providers}
        ids.update(self.history.snapshot().keys())
        return sorted(ids)

    async def official_status(self) -> Dict[str, OfficialStatusResult]:
        """Vendor status for every configured provider type, cached briefly."""
        async with self._official_lock:
            fresh = (
                self._official_fetched_at is not None
                and time.monotonic() - self._official_fetched_at < OFFICIAL_STATUS_TTL_SECONDS
            )
            if not fresh:
                types = [p.type for p in provider_configs(self.config)]
                async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
                    self._official = await check_all(types, client)
                self._official_fetched_at = time.monotonic()
            return dict(self._official)

    async def start(self):
        if self.schedule:
            await self.service.start()
        logger.info(
            "runtime_started",
            providers=len(self.config.providers),
            history=type(self.history).__name__,
            reuse_clients=self.clients.enabled,
        )

    async def aclose(self):
        await self.service.stop()
        await self.clients.aclose()
        logger.info("runtime_stopped")

    async def __aenter__(self) -> "MonitorRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
