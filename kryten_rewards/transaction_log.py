"""Append-only transaction log over an AccountStore.

Ledger commits write their entries through ``AccountStore.atomic_update`` so
that the account fields and the log entry land together; this class is the
read side plus the standalone ``append`` for audit entries.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from .errors import AccountNotFound
from .models import Transaction, TransactionType
from .store import AccountStore


class TransactionLog:
    """Immutable record of every ledger mutation."""

    def __init__(self, store: AccountStore) -> None:
        self._store = store

    async def append(self, transaction: Transaction) -> Transaction:
        """Persist one entry. Storage failures propagate to the caller."""
        return await self._store.append_transaction(transaction)

    async def sum_by_account_since(
        self,
        account_id: str,
        since: datetime,
        tx_type: TransactionType | None = None,
    ) -> Decimal:
        """Sum of ``amount`` for the account's entries at or after ``since``."""
        rows = await self._store.query_transactions(account_id, tx_type=tx_type, since=since)
        return sum((tx.amount for tx in rows), Decimal("0"))

    async def find(
        self, account_id: str, tx_type: TransactionType, reference: str,
    ) -> list[Transaction]:
        return await self._store.query_transactions(
            account_id, tx_type=tx_type, reference=reference,
        )

    async def history(self, account_id: str, limit: int = 20) -> list[Transaction]:
        """Newest entries first."""
        return await self._store.query_transactions(
            account_id, limit=limit, newest_first=True,
        )

    async def reconstruct_balance(self, account_id: str) -> Decimal:
        rows = await self._store.query_transactions(account_id)
        return sum((tx.balance_delta for tx in rows), Decimal("0"))

    async def reconcile(self, account_id: str) -> bool:
        """True when the account snapshot matches its log.

        Checks both ``balance == Σ balance_delta`` and
        ``balance == total_earned - total_withdrawn``.
        """
        account = await self._store.get(account_id)
        if account is None:
            raise AccountNotFound(account_id=account_id)
        from_log = await self.reconstruct_balance(account_id)
        return (
            account.balance == from_log
            and account.balance == account.total_earned - account.total_withdrawn
        )
