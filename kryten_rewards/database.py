"""SQLite account store for kryten-rewards.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory). Currency values are stored as
TEXT and handled as Decimal; timestamps are fixed-width UTC ISO strings.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from .errors import AccountNotFound, ConnectivityLost, StorageUnavailable, WriteConflict
from .models import Account, Transaction, TransactionType, Withdrawal, WithdrawalStatus
from .store import AccountStore
from .utils import connect_sqlite, format_timestamp, parse_timestamp

T = TypeVar("T")

_ACCOUNT_COLUMNS = frozenset({
    "coins", "balance", "today_earned", "total_earned", "total_withdrawn",
    "check_in_streak", "last_check_in", "last_earn_date", "spins_remaining",
    "completed_tasks", "weekly_bonus_claimed", "weekly_bonus_week",
    "referred_by", "total_referrals", "referral_earnings",
})


def storage_error(exc: sqlite3.Error) -> StorageUnavailable:
    """Map a sqlite3 error onto the transient storage taxonomy."""
    text = str(exc).lower()
    if "unable to open" in text or "disk i/o" in text:
        return ConnectivityLost(f"Account store unreachable: {exc}")
    return StorageUnavailable(f"Account store error: {exc}")


def _to_column(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        account_id=row["account_id"],
        coins=row["coins"],
        balance=Decimal(row["balance"]),
        today_earned=Decimal(row["today_earned"]),
        total_earned=Decimal(row["total_earned"]),
        total_withdrawn=Decimal(row["total_withdrawn"]),
        check_in_streak=row["check_in_streak"],
        last_check_in=parse_timestamp(row["last_check_in"]),
        last_earn_date=parse_timestamp(row["last_earn_date"]),
        spins_remaining=row["spins_remaining"],
        completed_tasks=row["completed_tasks"],
        weekly_bonus_claimed=bool(row["weekly_bonus_claimed"]),
        weekly_bonus_week=row["weekly_bonus_week"],
        referred_by=row["referred_by"],
        total_referrals=row["total_referrals"],
        referral_earnings=row["referral_earnings"],
        created_at=parse_timestamp(row["created_at"]),
        version=row["version"],
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        account_id=row["account_id"],
        type=TransactionType(row["type"]),
        amount=Decimal(row["amount"]),
        balance_delta=Decimal(row["balance_delta"]),
        description=row["description"] or "",
        timestamp=parse_timestamp(row["created_at"]),
        status=WithdrawalStatus(row["status"]) if row["status"] else None,
        reference=row["reference"],
    )


def _row_to_withdrawal(row: sqlite3.Row) -> Withdrawal:
    return Withdrawal(
        id=row["id"],
        account_id=row["account_id"],
        method=row["method"],
        account=row["account"],
        amount=Decimal(row["amount"]),
        status=WithdrawalStatus(row["status"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _insert_transaction(conn: sqlite3.Connection, tx: Transaction) -> int:
    cursor = conn.execute(
        "INSERT INTO transactions (account_id, type, amount, balance_delta, description, "
        "status, reference, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            tx.account_id,
            tx.type.value,
            str(tx.amount),
            str(tx.balance_delta),
            tx.description,
            tx.status.value if tx.status else None,
            tx.reference,
            format_timestamp(tx.timestamp),
        ),
    )
    return cursor.lastrowid


class RewardsDatabase(AccountStore):
    """SQLite-backed persistence for accounts, transactions and withdrawals."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        return connect_sqlite(self._db_path)

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except sqlite3.Error as exc:
            raise storage_error(exc) from exc

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run(self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    coins INTEGER DEFAULT 0,
                    balance TEXT DEFAULT '0',
                    today_earned TEXT DEFAULT '0',
                    total_earned TEXT DEFAULT '0',
                    total_withdrawn TEXT DEFAULT '0',
                    check_in_streak INTEGER DEFAULT 0,
                    last_check_in TIMESTAMP,
                    last_earn_date TIMESTAMP,
                    spins_remaining INTEGER DEFAULT 0,
                    completed_tasks INTEGER DEFAULT 0,
                    weekly_bonus_claimed BOOLEAN DEFAULT 0,
                    weekly_bonus_week TEXT,
                    referred_by TEXT,
                    total_referrals INTEGER DEFAULT 0,
                    referral_earnings INTEGER DEFAULT 0,
                    created_at TIMESTAMP,
                    version INTEGER DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    balance_delta TEXT NOT NULL,
                    description TEXT,
                    status TEXT,
                    reference TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_account "
                "ON transactions(account_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_type "
                "ON transactions(account_id, type)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS withdrawals (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    method TEXT NOT NULL,
                    account TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    status TEXT DEFAULT 'pending',
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_withdrawals_account "
                "ON withdrawals(account_id, created_at)"
            )

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    async def ping(self) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute("SELECT 1 FROM accounts LIMIT 1").fetchone()
            finally:
                conn.close()

        await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def get(self, account_id: str) -> Account | None:
        def _sync() -> Account | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM accounts WHERE account_id = ?", (account_id,),
                ).fetchone()
                return _row_to_account(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    async def create(self, account: Account) -> tuple[Account, bool]:
        def _sync() -> tuple[Account, bool]:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO accounts (account_id, coins, balance, today_earned, "
                    "total_earned, total_withdrawn, check_in_streak, last_check_in, last_earn_date, "
                    "spins_remaining, completed_tasks, weekly_bonus_claimed, weekly_bonus_week, "
                    "referred_by, total_referrals, referral_earnings, created_at, version) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        account.account_id,
                        account.coins,
                        _to_column(account.balance),
                        _to_column(account.today_earned),
                        _to_column(account.total_earned),
                        _to_column(account.total_withdrawn),
                        account.check_in_streak,
                        _to_column(account.last_check_in),
                        _to_column(account.last_earn_date),
                        account.spins_remaining,
                        account.completed_tasks,
                        _to_column(account.weekly_bonus_claimed),
                        account.weekly_bonus_week,
                        account.referred_by,
                        account.total_referrals,
                        account.referral_earnings,
                        _to_column(account.created_at),
                        account.version,
                    ),
                )
                created = cursor.rowcount == 1
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM accounts WHERE account_id = ?", (account.account_id,),
                ).fetchone()
                return _row_to_account(row), created
            finally:
                conn.close()

        return await self._run(_sync)

    async def atomic_update(
        self,
        account_id: str,
        expected_version: int,
        changes: dict[str, Any],
        transactions: Sequence[Transaction] = (),
        withdrawal: Withdrawal | None = None,
    ) -> Account:
        """Conditional UPDATE keyed by version; transactions and the optional
        withdrawal row are written in the same SQLite transaction."""
        unknown = set(changes) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")

        def _sync() -> Account:
            conn = self._get_connection()
            try:
                assignments = "".join(f"{col} = ?, " for col in changes)
                params = [_to_column(v) for v in changes.values()]
                cursor = conn.execute(
                    f"UPDATE accounts SET {assignments}version = version + 1 "
                    "WHERE account_id = ? AND version = ?",
                    (*params, account_id, expected_version),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    exists = conn.execute(
                        "SELECT 1 FROM accounts WHERE account_id = ?", (account_id,),
                    ).fetchone()
                    if not exists:
                        raise AccountNotFound(account_id=account_id)
                    raise WriteConflict(account_id=account_id)

                for tx in transactions:
                    _insert_transaction(conn, tx)

                if withdrawal is not None:
                    conn.execute(
                        "INSERT INTO withdrawals (id, account_id, method, account, amount, status, "
                        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            withdrawal.id,
                            withdrawal.account_id,
                            withdrawal.method,
                            withdrawal.account,
                            str(withdrawal.amount),
                            withdrawal.status.value,
                            format_timestamp(withdrawal.created_at),
                            format_timestamp(withdrawal.updated_at),
                        ),
                    )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM accounts WHERE account_id = ?", (account_id,),
                ).fetchone()
                return _row_to_account(row)
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Transaction Log
    # ══════════════════════════════════════════════════════════

    async def append_transaction(self, transaction: Transaction) -> Transaction:
        def _sync() -> int:
            conn = self._get_connection()
            try:
                tx_id = _insert_transaction(conn, transaction)
                conn.commit()
                return tx_id
            finally:
                conn.close()

        tx_id = await self._run(_sync)
        return Transaction(
            id=tx_id,
            account_id=transaction.account_id,
            type=transaction.type,
            amount=transaction.amount,
            balance_delta=transaction.balance_delta,
            description=transaction.description,
            timestamp=transaction.timestamp,
            status=transaction.status,
            reference=transaction.reference,
        )

    async def query_transactions(
        self,
        account_id: str,
        tx_type: TransactionType | None = None,
        since: datetime | None = None,
        reference: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Transaction]:
        clauses = ["account_id = ?"]
        params: list[Any] = [account_id]
        if tx_type is not None:
            clauses.append("type = ?")
            params.append(tx_type.value)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(format_timestamp(since))
        if reference is not None:
            clauses.append("reference = ?")
            params.append(reference)
        order = "DESC" if newest_first else "ASC"
        sql = (
            f"SELECT * FROM transactions WHERE {' AND '.join(clauses)} "
            f"ORDER BY created_at {order}, id {order}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        def _sync() -> list[Transaction]:
            conn = self._get_connection()
            try:
                rows = conn.execute(sql, params).fetchall()
                return [_row_to_transaction(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Withdrawals
    # ══════════════════════════════════════════════════════════

    async def get_withdrawals(self, account_id: str, limit: int = 10) -> list[Withdrawal]:
        def _sync() -> list[Withdrawal]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM withdrawals WHERE account_id = ? "
                    "ORDER BY created_at DESC LIMIT ?",
                    (account_id, limit),
                ).fetchall()
                return [_row_to_withdrawal(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal | None:
        def _sync() -> Withdrawal | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,),
                ).fetchone()
                return _row_to_withdrawal(row) if row else None
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Population Queries (metrics)
    # ══════════════════════════════════════════════════════════

    async def get_account_count(self) -> int:
        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM accounts").fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_pending_withdrawal_count(self) -> int:
        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM withdrawals WHERE status = 'pending'"
                ).fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await self._run(_sync)
