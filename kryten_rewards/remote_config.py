"""Configuration provider — remote snapshots served through the TTL cache.

``RemoteConfigClient`` is a thin aiohttp wrapper around the configuration
provider's JSON API. ``ConfigProvider`` turns its payloads into frozen
snapshots, caches them for the configured TTL and falls back to the
defaults from the service YAML when the provider is not configured or the
fetch fails. All tests mock the HTTP layer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError

from .cache import TTLCache
from .config import AppSettings, EarningRates, TaskDefinition, WithdrawalSettings

if TYPE_CHECKING:
    from .config import ConfigProviderConfig, RewardsConfig


EARNING_RATES_KEY = "settings:earnings"
WITHDRAWAL_SETTINGS_KEY = "settings:withdrawal"
APP_SETTINGS_KEY = "settings:app"
TASKS_KEY = "tasks:active"


class RemoteConfigClient:
    """Async client for the configuration provider API."""

    def __init__(self, config: ConfigProviderConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._config.base_url)

    async def start(self) -> None:
        """Create the HTTP session."""
        headers: dict[str, str] = {}
        if self._config.api_token:
            headers["Authorization"] = f"Token {self._config.api_token}"
        self._session = aiohttp.ClientSession(
            base_url=self._config.base_url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def fetch(self, path: str) -> Any:
        """GET ``path`` and return decoded JSON. None on 404.

        Raises RuntimeError when the session is not started and
        aiohttp.ClientError on transport/HTTP errors.
        """
        if not self._session:
            raise RuntimeError("RemoteConfigClient not started")
        async with self._session.get(path) as resp:
            if resp.status == 404:
                return None
            resp.raise_for_status()
            return await resp.json()


class ConfigProvider:
    """Serves immutable configuration snapshots to the ledger."""

    def __init__(
        self,
        config: RewardsConfig,
        cache: TTLCache,
        logger: logging.Logger,
        client: RemoteConfigClient | None = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._logger = logger
        self._client = client

    def update_config(self, new_config: RewardsConfig) -> None:
        """Hot-swap the local defaults and drop cached snapshots."""
        self._config = new_config
        self._cache.clear()

    @property
    def _remote(self) -> bool:
        return self._client is not None and self._client.enabled

    async def _load(self, key: str, path: str, parse, default):
        """Cached remote fetch; defaults on failure (not cached)."""
        if not self._remote:
            return default

        async def loader():
            payload = await self._client.fetch(path)
            return default if payload is None else parse(payload)

        try:
            return await self._cache.get_with_cache(key, loader)
        except (aiohttp.ClientError, TimeoutError, ValidationError, ValueError) as e:
            self._logger.error("Config fetch failed for %s: %s", key, e)
            return default

    async def get_earning_rates(self) -> EarningRates:
        return await self._load(
            EARNING_RATES_KEY,
            "/api/v1/settings/earnings",
            EarningRates.model_validate,
            self._config.earning_rates,
        )

    async def get_withdrawal_settings(self) -> WithdrawalSettings:
        return await self._load(
            WITHDRAWAL_SETTINGS_KEY,
            "/api/v1/settings/withdrawal",
            WithdrawalSettings.model_validate,
            self._config.withdrawal,
        )

    async def get_app_settings(self) -> AppSettings:
        return await self._load(
            APP_SETTINGS_KEY,
            "/api/v1/settings/app",
            AppSettings.model_validate,
            self._config.app,
        )

    async def get_active_tasks(self) -> list[TaskDefinition]:
        tasks = await self._load(
            TASKS_KEY,
            "/api/v1/tasks",
            _parse_tasks,
            list(self._config.tasks),
        )
        return [t for t in tasks if t.status == "active"]

    async def get_task(self, task_id: str) -> TaskDefinition | None:
        for task in await self.get_active_tasks():
            if task.id == task_id:
                return task
        return None

    def handle_change_notification(self, key: str | None) -> int:
        """Invalidate one snapshot key, a prefix ending in ':' or '*', or all."""
        if not key or key == "*":
            count = len(self._cache)
            self._cache.clear()
        elif key.endswith(("*", ":")):
            count = self._cache.invalidate_prefix(key.rstrip("*"))
        else:
            count = int(self._cache.invalidate(key))
        self._logger.info("Config change notification for %s: %d entries invalidated", key or "*", count)
        return count


def _parse_tasks(payload: Any) -> list[TaskDefinition]:
    items = payload.get("results", payload) if isinstance(payload, dict) else payload
    return [TaskDefinition.model_validate(item) for item in items]
