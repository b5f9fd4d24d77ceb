"""Sliding-window rate limiter keyed by (actor, action).

Windows are persisted in the device-state SQLite file so limits survive a
restart. Each check is a read-modify-write on one key, serialized by a
per-key asyncio.Lock and executed inside a single SQLite transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from .database import storage_error
from .errors import RateLimitExceeded
from .utils import connect_sqlite, now_utc

if TYPE_CHECKING:
    from .config import RateLimitRule


class RateLimiter:
    """Persistent sliding-window limiter."""

    def __init__(
        self,
        db_path: str,
        rules: dict[str, RateLimitRule],
        logger: logging.Logger,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._db_path = db_path
        self._rules = dict(rules)
        self._logger = logger
        self._clock = clock
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def update_rules(self, rules: dict[str, RateLimitRule]) -> None:
        self._rules = dict(rules)

    async def initialize(self) -> None:
        def _sync() -> None:
            conn = connect_sqlite(self._db_path)
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS rate_windows (
                        actor_id TEXT NOT NULL,
                        action TEXT NOT NULL,
                        timestamps TEXT NOT NULL DEFAULT '[]',
                        UNIQUE(actor_id, action)
                    )
                """)
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except sqlite3.Error as exc:
            raise storage_error(exc) from exc

    @staticmethod
    def _load(conn: sqlite3.Connection, actor_id: str, action: str) -> list[float]:
        row = conn.execute(
            "SELECT timestamps FROM rate_windows WHERE actor_id = ? AND action = ?",
            (actor_id, action),
        ).fetchone()
        return json.loads(row["timestamps"]) if row else []

    @staticmethod
    def _save(conn: sqlite3.Connection, actor_id: str, action: str, window: list[float]) -> None:
        conn.execute(
            "INSERT INTO rate_windows (actor_id, action, timestamps) VALUES (?, ?, ?) "
            "ON CONFLICT(actor_id, action) DO UPDATE SET timestamps = excluded.timestamps",
            (actor_id, action, json.dumps(window)),
        )

    # ══════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════

    async def check(self, actor_id: str, action: str) -> None:
        """Admit one request or raise RateLimitExceeded(retry_after).

        Actions without a configured rule are always admitted.
        """
        rule = self._rules.get(action)
        if rule is None:
            return

        now = self._clock().timestamp()
        lock = self._locks.setdefault((actor_id, action), asyncio.Lock())

        def _sync() -> float | None:
            conn = connect_sqlite(self._db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                window = [t for t in self._load(conn, actor_id, action) if now - t < rule.window_seconds]
                if len(window) >= rule.limit:
                    # Persist the pruned window; the request itself is not recorded
                    self._save(conn, actor_id, action, window)
                    conn.commit()
                    if not window:
                        return rule.window_seconds
                    return rule.window_seconds - (now - window[0])
                window.append(now)
                self._save(conn, actor_id, action, window)
                conn.commit()
                return None
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

        async with lock:
            retry_after = await self._run(_sync)

        if retry_after is not None:
            self._logger.info(
                "Rate limit hit: %s/%s (retry in %.0fs)", actor_id, action, retry_after,
            )
            raise RateLimitExceeded(retry_after)

    async def get_remaining(self, actor_id: str, action: str) -> float:
        """Requests still allowed in the current window (inf if unlimited)."""
        rule = self._rules.get(action)
        if rule is None:
            return float("inf")
        now = self._clock().timestamp()

        def _sync() -> list[float]:
            conn = connect_sqlite(self._db_path)
            try:
                return self._load(conn, actor_id, action)
            finally:
                conn.close()

        window = await self._run(_sync)
        live = [t for t in window if now - t < rule.window_seconds]
        return max(0, rule.limit - len(live))

    async def reset(self, actor_id: str, action: str) -> None:
        """Clear the window for one key."""

        def _sync() -> None:
            conn = connect_sqlite(self._db_path)
            try:
                conn.execute(
                    "DELETE FROM rate_windows WHERE actor_id = ? AND action = ?",
                    (actor_id, action),
                )
                conn.commit()
            finally:
                conn.close()

        async with self._locks.setdefault((actor_id, action), asyncio.Lock()):
            await self._run(_sync)

    async def cleanup(self) -> int:
        """Delete windows whose entries have all expired. Returns rows removed."""
        now = self._clock().timestamp()
        longest = {action: rule.window_seconds for action, rule in self._rules.items()}

        def _sync() -> list[tuple[str, str]]:
            conn = connect_sqlite(self._db_path)
            try:
                rows = conn.execute("SELECT actor_id, action, timestamps FROM rate_windows").fetchall()
                stale = [
                    (r["actor_id"], r["action"]) for r in rows
                    if all(now - t >= longest.get(r["action"], 0) for t in json.loads(r["timestamps"]))
                ]
                conn.executemany(
                    "DELETE FROM rate_windows WHERE actor_id = ? AND action = ?", stale,
                )
                conn.commit()
                return stale
            finally:
                conn.close()

        stale = await self._run(_sync)
        for key in stale:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]
        if stale:
            self._logger.debug("Rate limiter cleanup removed %d windows", len(stale))
        return len(stale)
