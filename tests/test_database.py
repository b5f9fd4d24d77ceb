"""Tests for the SQLite account store (RewardsDatabase)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from kryten_rewards.database import RewardsDatabase
from kryten_rewards.errors import AccountNotFound, ConnectivityLost, WriteConflict
from kryten_rewards.models import (
    Account,
    Transaction,
    TransactionType,
    Withdrawal,
    WithdrawalStatus,
)

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _tx(account_id: str = "alice", amount: str = "10", delta: str = "0.5", **kw) -> Transaction:
    return Transaction(
        account_id=account_id,
        type=kw.pop("type", TransactionType.AD_WATCH),
        amount=Decimal(amount),
        balance_delta=Decimal(delta),
        description=kw.pop("description", "ad"),
        timestamp=kw.pop("timestamp", T0),
        **kw,
    )


class TestAccounts:

    async def test_initialize_idempotent(self, database: RewardsDatabase):
        await database.initialize()
        await database.ping()

    async def test_create_and_get(self, database: RewardsDatabase):
        account, created = await database.create(Account("alice", spins_remaining=2, last_earn_date=T0, created_at=T0))
        assert created is True
        fetched = await database.get("alice")
        assert fetched == account
        assert fetched.balance == Decimal("0")
        assert fetched.last_check_in is None
        assert fetched.created_at == T0

    async def test_create_existing_returns_stored(self, database: RewardsDatabase):
        await database.create(Account("alice", coins=5, created_at=T0))
        account, created = await database.create(Account("alice", coins=99, created_at=T0))
        assert created is False
        assert account.coins == 5

    async def test_get_missing(self, database: RewardsDatabase):
        assert await database.get("ghost") is None

    async def test_atomic_update_bumps_version(self, database: RewardsDatabase):
        await database.create(Account("alice", created_at=T0))
        updated = await database.atomic_update(
            "alice", 0,
            {"coins": 10, "balance": Decimal("0.5"), "weekly_bonus_claimed": True, "last_check_in": T0},
            [_tx()],
        )
        assert updated.version == 1
        assert updated.coins == 10
        assert updated.balance == Decimal("0.5")
        assert updated.weekly_bonus_claimed is True
        assert updated.last_check_in == T0
        assert len(await database.query_transactions("alice")) == 1

    async def test_stale_version_conflicts_without_writing(self, database: RewardsDatabase):
        await database.create(Account("alice", created_at=T0))
        await database.atomic_update("alice", 0, {"coins": 10}, [_tx()])
        with pytest.raises(WriteConflict):
            await database.atomic_update("alice", 0, {"coins": 20}, [_tx()])
        account = await database.get("alice")
        assert account.coins == 10
        assert len(await database.query_transactions("alice")) == 1

    async def test_update_missing_account(self, database: RewardsDatabase):
        with pytest.raises(AccountNotFound):
            await database.atomic_update("ghost", 0, {"coins": 1})

    async def test_unknown_column_rejected(self, database: RewardsDatabase):
        await database.create(Account("alice", created_at=T0))
        with pytest.raises(ValueError):
            await database.atomic_update("alice", 0, {"version": 7})

    async def test_unreachable_file(self, tmp_path: Path):
        db = RewardsDatabase(str(tmp_path / "missing" / "rewards.db"), logging.getLogger("test"))
        with pytest.raises(ConnectivityLost):
            await db.ping()


class TestTransactionsAndWithdrawals:

    async def test_query_filters(self, database: RewardsDatabase):
        await database.append_transaction(_tx(timestamp=T0))
        await database.append_transaction(_tx(timestamp=T0 + timedelta(hours=1), type=TransactionType.CHECKIN))
        await database.append_transaction(_tx(timestamp=T0 + timedelta(hours=2), reference="task-1",
                                              type=TransactionType.TASK_COMPLETION))
        await database.append_transaction(_tx(account_id="bob"))

        assert len(await database.query_transactions("alice")) == 3
        since = await database.query_transactions("alice", since=T0 + timedelta(minutes=30))
        assert [tx.type for tx in since] == [TransactionType.CHECKIN, TransactionType.TASK_COMPLETION]
        by_ref = await database.query_transactions("alice", reference="task-1")
        assert len(by_ref) == 1
        newest = await database.query_transactions("alice", limit=1, newest_first=True)
        assert newest[0].type is TransactionType.TASK_COMPLETION

    async def test_append_assigns_id(self, database: RewardsDatabase):
        stored = await database.append_transaction(_tx())
        assert stored.id is not None

    async def test_withdrawal_written_with_commit(self, database: RewardsDatabase):
        await database.create(Account("alice", balance=Decimal("100"), created_at=T0))
        withdrawal = Withdrawal(
            id="w1", account_id="alice", method="bkash", account="01712345678",
            amount=Decimal("60"), created_at=T0, updated_at=T0,
        )
        debit = _tx(amount="60", delta="-60", type=TransactionType.WITHDRAWAL,
                    status=WithdrawalStatus.PENDING, reference="w1")
        await database.atomic_update("alice", 0, {"balance": Decimal("40")}, [debit], withdrawal)

        stored = await database.get_withdrawal("w1")
        assert stored == withdrawal
        assert await database.get_withdrawals("alice") == [withdrawal]
        assert await database.get_pending_withdrawal_count() == 1
        assert await database.get_account_count() == 1
        tx = (await database.query_transactions("alice", tx_type=TransactionType.WITHDRAWAL))[0]
        assert tx.status is WithdrawalStatus.PENDING
