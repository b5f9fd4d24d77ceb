"""Concurrent mutations against one account.

Tests:
- Parallel add_coins never exceed the daily cap (memory and SQLite)
- Parallel spins never go below zero
- WriteConflict retried with backoff; exhausted retries surface
- ConnectivityLost is not retried by the ledger
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from kryten_rewards.config import RewardsConfig
from kryten_rewards.errors import (
    ConnectivityLost,
    DailyLimitExceeded,
    NoSpinsLeft,
    StorageUnavailable,
    WriteConflict,
)
from kryten_rewards.models import TransactionType
from kryten_rewards.store import MemoryAccountStore
from kryten_rewards.transaction_log import TransactionLog

from tests.conftest import FakeClock, build_ledger, make_config_dict


def _contended_config() -> RewardsConfig:
    return RewardsConfig(**make_config_dict(ledger={
        "daily_earn_cap": 50,
        "max_single_award": 1000,
        "commit_max_attempts": 100,
        "backoff_base_seconds": 0.0005,
        "backoff_max_seconds": 0.005,
    }))


class FlakyStore(MemoryAccountStore):
    """Fails the first ``failures`` conditional updates with ``error``."""

    def __init__(self, failures: int, error: type[Exception]) -> None:
        super().__init__()
        self.failures = failures
        self.error = error
        self.update_calls = 0

    async def atomic_update(self, *args, **kwargs):
        self.update_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error()
        return await super().atomic_update(*args, **kwargs)


class TestDailyCapUnderContention:

    async def test_parallel_add_coins_respect_cap(self, store, clock: FakeClock):
        """20 concurrent credits of 5.0 against a cap of 50 → exactly 10 land."""
        ledger = build_ledger(_contended_config(), store, clock)
        await ledger.open_account("alice")

        results = await asyncio.gather(
            *(ledger.add_coins("alice", 100, TransactionType.AD_WATCH, "ad") for _ in range(20)),
            return_exceptions=True,
        )
        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, DailyLimitExceeded)]
        assert len(succeeded) == 10
        assert len(rejected) == 10

        account = await ledger.get_account("alice")
        assert account.today_earned == Decimal("50")
        assert account.coins == 1000
        assert len(await TransactionLog(store).history("alice", limit=100)) == 10

    async def test_parallel_spins(self, store, clock: FakeClock):
        ledger = build_ledger(_contended_config(), store, clock)
        await ledger.open_account("alice")

        results = await asyncio.gather(
            *(ledger.spin_wheel("alice") for _ in range(6)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, NoSpinsLeft)) == 4
        assert sorted(r.remaining for r in results if not isinstance(r, Exception)) == [0, 1]
        assert (await ledger.get_account("alice")).spins_remaining == 0


class TestCommitRetries:

    async def test_write_conflict_retried(self, clock: FakeClock):
        store = FlakyStore(failures=2, error=WriteConflict)
        ledger = build_ledger(_contended_config(), store, clock)
        await ledger.open_account("alice")

        result = await ledger.add_coins("alice", 10, TransactionType.AD_WATCH, "ad")
        assert result.coins == 10
        assert ledger.conflicts_total == 2
        assert (await ledger.get_account("alice")).coins == 10

    async def test_transient_storage_error_retried(self, clock: FakeClock):
        store = FlakyStore(failures=1, error=StorageUnavailable)
        ledger = build_ledger(_contended_config(), store, clock)
        await ledger.open_account("alice")
        await ledger.check_in("alice")
        assert (await ledger.get_account("alice")).coins == 10

    async def test_retries_exhausted(self, clock: FakeClock):
        config = RewardsConfig(**make_config_dict(ledger={
            "commit_max_attempts": 3,
            "backoff_base_seconds": 0.0005,
            "backoff_max_seconds": 0.001,
        }))
        store = FlakyStore(failures=10, error=WriteConflict)
        ledger = build_ledger(config, store, clock)
        await ledger.open_account("alice")

        with pytest.raises(WriteConflict):
            await ledger.add_coins("alice", 10, TransactionType.AD_WATCH, "ad")
        assert store.update_calls == 3
        assert (await ledger.get_account("alice")).coins == 0

    async def test_connectivity_lost_not_retried(self, clock: FakeClock):
        store = FlakyStore(failures=5, error=ConnectivityLost)
        ledger = build_ledger(_contended_config(), store, clock)
        await ledger.open_account("alice")

        with pytest.raises(ConnectivityLost):
            await ledger.check_in("alice")
        assert store.update_calls == 1
