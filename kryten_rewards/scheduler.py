"""Scheduler module — periodic maintenance tasks.

Cache sweep, rate-window cleanup and the account-store connectivity check
that flips the service between online and offline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import ConnectivityLost

if TYPE_CHECKING:
    from .cache import TTLCache
    from .config import RewardsConfig
    from .rate_limiter import RateLimiter
    from .rewards_service import RewardsService
    from .store import AccountStore

RATE_WINDOW_CLEANUP_SECONDS = 3600


class Scheduler:
    """Central module for all periodic tasks."""

    def __init__(
        self,
        config: RewardsConfig,
        store: AccountStore,
        cache: TTLCache,
        rate_limiter: RateLimiter,
        service: RewardsService,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._service = service
        self._logger = logger or logging.getLogger("rewards.scheduler")
        self._tasks: list[asyncio.Task] = []

    def update_config(self, new_config: RewardsConfig) -> None:
        self._config = new_config

    async def start(self) -> None:
        """Start all periodic tasks."""
        self._tasks.append(asyncio.create_task(self._cache_sweep_loop()))
        self._tasks.append(asyncio.create_task(self._rate_window_cleanup_loop()))
        self._tasks.append(asyncio.create_task(self._connectivity_check_loop()))
        self._logger.info(
            "Scheduler started (cache sweep %ss, connectivity check %ss)",
            self._config.cache.sweep_interval_seconds,
            self._config.connectivity.check_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ══════════════════════════════════════════════════════════
    #  Cache & rate windows
    # ══════════════════════════════════════════════════════════

    async def _cache_sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cache.sweep_interval_seconds)
            try:
                removed = self._cache.sweep_expired()
                if removed:
                    self._logger.debug("Cache sweep removed %d entries", removed)
            except Exception:
                self._logger.exception("Cache sweep failed")

    async def _rate_window_cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(RATE_WINDOW_CLEANUP_SECONDS)
            try:
                await self._rate_limiter.cleanup()
            except Exception:
                self._logger.exception("Rate window cleanup failed")

    # ══════════════════════════════════════════════════════════
    #  Connectivity check
    # ══════════════════════════════════════════════════════════

    async def check_connectivity(self) -> bool:
        """Ping the account store and update the service's online state.

        Returns True when the store answered.
        """
        try:
            await self._store.ping()
        except ConnectivityLost as e:
            if self._service.is_online():
                self._logger.warning("Account store unreachable: %s", e)
            await self._service.set_online(False)
            return False

        if not self._service.is_online():
            report = await self._service.set_online(True)
            if report is not None:
                self._logger.info(
                    "Replayed %d/%d queued actions after reconnect",
                    report.succeeded, report.processed,
                )
        return True

    async def _connectivity_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.connectivity.check_interval_seconds)
            try:
                await self.check_connectivity()
            except Exception:
                self._logger.exception("Connectivity check failed")
