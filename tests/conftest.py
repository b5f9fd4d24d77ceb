"""Shared test fixtures for kryten-rewards."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from kryten_rewards.cache import TTLCache
from kryten_rewards.config import RewardsConfig
from kryten_rewards.database import RewardsDatabase
from kryten_rewards.ledger import Ledger
from kryten_rewards.offline_queue import OfflineQueue
from kryten_rewards.rate_limiter import RateLimiter
from kryten_rewards.remote_config import ConfigProvider
from kryten_rewards.rewards_service import RewardsService
from kryten_rewards.store import AccountStore, MemoryAccountStore
from kryten_rewards.transaction_log import TransactionLog


# ── Minimal config dict matching RewardsConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "nats": {"servers": ["nats://localhost:4222"]},
        "channels": [{"domain": "cytu.be", "channel": "testchannel"}],
        "service": {"name": "rewards"},
        "database": {"path": ":memory:"},
        "ledger": {
            "daily_earn_cap": 50,
            "max_single_award": 1000,
            "commit_max_attempts": 5,
            "backoff_base_seconds": 0.001,
            "backoff_max_seconds": 0.01,
        },
        "milestone": {"task_threshold": 50, "bonus_min": 10, "bonus_max": 50},
        "tasks": [
            {"id": "follow-page", "title": "Follow our page", "reward": 20},
            {"id": "join-group", "title": "Join the group", "reward": 15},
            {"id": "old-survey", "title": "Retired survey", "reward": 5, "status": "inactive"},
        ],
    }
    base.update(overrides)
    return base


class FakeClock:
    """Controllable UTC clock injected into ledger, limiter and queue."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Controllable monotonic clock for TTLCache."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> RewardsConfig:
    """Return a parsed RewardsConfig."""
    return RewardsConfig(**sample_config_dict)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("test")


@pytest.fixture
def clock() -> FakeClock:
    """Monday 2 March 2026, 10:00 UTC."""
    return FakeClock(datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_rewards.db")


@pytest.fixture
def tmp_state_path(tmp_path: Path) -> str:
    """Return a temporary device-state SQLite path."""
    return str(tmp_path / "test_device.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[RewardsDatabase, None]:
    """Provide an initialized database with temp file."""
    db = RewardsDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def memory_store() -> MemoryAccountStore:
    return MemoryAccountStore()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_db_path: str) -> AccountStore:
    """Each ledger test runs against both store implementations."""
    if request.param == "memory":
        return MemoryAccountStore()
    db = RewardsDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    return db


@pytest.fixture
def cache() -> TTLCache:
    return TTLCache(ttl_seconds=300, logger=logging.getLogger("test"))


@pytest.fixture
def config_provider(sample_config: RewardsConfig, cache: TTLCache) -> ConfigProvider:
    """Provider without a remote client: serves the YAML defaults."""
    return ConfigProvider(sample_config, cache, logging.getLogger("test"))


def build_ledger(
    config: RewardsConfig,
    store: AccountStore,
    clock: FakeClock,
    rng: random.Random | None = None,
) -> Ledger:
    """Ledger wired with a local-defaults config provider."""
    provider = ConfigProvider(config, TTLCache(), logging.getLogger("test"))
    return Ledger(
        config=config,
        store=store,
        transaction_log=TransactionLog(store),
        config_provider=provider,
        logger=logging.getLogger("test"),
        clock=clock,
        rng=rng or random.Random(1234),
    )


@pytest.fixture
def ledger(sample_config: RewardsConfig, store: AccountStore, clock: FakeClock, rng: random.Random) -> Ledger:
    return build_ledger(sample_config, store, clock, rng)


@pytest.fixture
def tx_log(store: AccountStore) -> TransactionLog:
    return TransactionLog(store)


@pytest_asyncio.fixture
async def rate_limiter(sample_config: RewardsConfig, tmp_state_path: str, clock: FakeClock) -> RateLimiter:
    limiter = RateLimiter(
        tmp_state_path, sample_config.rate_limits.rules, logging.getLogger("test"), clock=clock,
    )
    await limiter.initialize()
    return limiter


@pytest_asyncio.fixture
async def offline_queue(tmp_state_path: str, clock: FakeClock) -> OfflineQueue:
    queue = OfflineQueue(tmp_state_path, logging.getLogger("test"), clock=clock)
    await queue.initialize()
    return queue


@pytest.fixture
def service(ledger: Ledger, rate_limiter: RateLimiter, offline_queue: OfflineQueue) -> RewardsService:
    return RewardsService(ledger, rate_limiter, offline_queue, logging.getLogger("test"))


@pytest.fixture
def mock_client() -> MagicMock:
    """Return a mock KrytenClient with async methods."""
    client = MagicMock()
    client.connect = AsyncMock()
    client.run = AsyncMock()
    client.stop = AsyncMock()
    client.subscribe = AsyncMock()
    client.subscribe_request_reply = AsyncMock()
    return client
