"""Account store contract and its in-memory implementation.

The ledger only talks to an ``AccountStore``. The contract is narrow: point
reads, creation, one atomic conditional update keyed by the account's
``version``, and ordered queries over the transaction log and withdrawals.
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from .errors import AccountNotFound, WriteConflict
from .models import Account, Transaction, TransactionType, Withdrawal


class AccountStore(ABC):
    """Persistence contract used by the ledger."""

    @abstractmethod
    async def get(self, account_id: str) -> Account | None:
        """Return the current account snapshot, or None."""

    @abstractmethod
    async def create(self, account: Account) -> tuple[Account, bool]:
        """Insert ``account`` unless it exists. Returns (stored, created)."""

    @abstractmethod
    async def atomic_update(
        self,
        account_id: str,
        expected_version: int,
        changes: dict[str, Any],
        transactions: Sequence[Transaction] = (),
        withdrawal: Withdrawal | None = None,
    ) -> Account:
        """Apply ``changes`` and persist ``transactions``/``withdrawal`` in one
        commit, only if the stored version still equals ``expected_version``.

        Raises WriteConflict on a version mismatch and AccountNotFound if
        the account does not exist. Returns the updated account.
        """

    @abstractmethod
    async def append_transaction(self, transaction: Transaction) -> Transaction:
        """Persist a single standalone transaction and return it with its id."""

    @abstractmethod
    async def query_transactions(
        self,
        account_id: str,
        tx_type: TransactionType | None = None,
        since: datetime | None = None,
        reference: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Transaction]:
        """Transactions for one account filtered by fields, ordered by time."""

    @abstractmethod
    async def get_withdrawals(self, account_id: str, limit: int = 10) -> list[Withdrawal]:
        """Most recent withdrawals first."""

    @abstractmethod
    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal | None:
        ...

    async def ping(self) -> None:
        """Raise StorageUnavailable/ConnectivityLost if the store is unreachable."""


class MemoryAccountStore(AccountStore):
    """Process-local store implementing the same contract as the SQLite one.

    Every method yields to the event loop once before touching state so that
    concurrent callers interleave the way they would against real I/O; the
    version check and the write itself never straddle a suspension point.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._transactions: list[Transaction] = []
        self._withdrawals: dict[str, Withdrawal] = {}
        self._tx_ids = itertools.count(1)

    async def get(self, account_id: str) -> Account | None:
        await asyncio.sleep(0)
        return self._accounts.get(account_id)

    async def create(self, account: Account) -> tuple[Account, bool]:
        await asyncio.sleep(0)
        existing = self._accounts.get(account.account_id)
        if existing is not None:
            return existing, False
        self._accounts[account.account_id] = account
        return account, True

    async def atomic_update(
        self,
        account_id: str,
        expected_version: int,
        changes: dict[str, Any],
        transactions: Sequence[Transaction] = (),
        withdrawal: Withdrawal | None = None,
    ) -> Account:
        await asyncio.sleep(0)
        current = self._accounts.get(account_id)
        if current is None:
            raise AccountNotFound(account_id=account_id)
        if current.version != expected_version:
            raise WriteConflict(account_id=account_id)
        updated = current.apply(changes)
        self._accounts[account_id] = updated
        for tx in transactions:
            self._transactions.append(replace(tx, id=next(self._tx_ids)))
        if withdrawal is not None:
            self._withdrawals[withdrawal.id] = withdrawal
        return updated

    async def append_transaction(self, transaction: Transaction) -> Transaction:
        await asyncio.sleep(0)
        stored = replace(transaction, id=next(self._tx_ids))
        self._transactions.append(stored)
        return stored

    async def query_transactions(
        self,
        account_id: str,
        tx_type: TransactionType | None = None,
        since: datetime | None = None,
        reference: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Transaction]:
        await asyncio.sleep(0)
        rows = [
            tx for tx in self._transactions
            if tx.account_id == account_id
            and (tx_type is None or tx.type == tx_type)
            and (since is None or tx.timestamp >= since)
            and (reference is None or tx.reference == reference)
        ]
        rows.sort(key=lambda tx: (tx.timestamp, tx.id or 0), reverse=newest_first)
        return rows[:limit] if limit is not None else rows

    async def get_withdrawals(self, account_id: str, limit: int = 10) -> list[Withdrawal]:
        await asyncio.sleep(0)
        rows = [w for w in self._withdrawals.values() if w.account_id == account_id]
        rows.sort(key=lambda w: w.created_at, reverse=True)
        return rows[:limit]

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal | None:
        await asyncio.sleep(0)
        return self._withdrawals.get(withdrawal_id)
