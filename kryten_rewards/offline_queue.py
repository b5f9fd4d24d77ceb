"""Durable FIFO of mutating actions deferred while the account store is
unreachable.

Items live in the device-state SQLite file and are replayed in insertion
order on reconnect. Delivery is at-least-once: an item is deleted only after
its handler returns, so handlers must tolerate duplicates (the ledger's own
checks, e.g. AlreadyCheckedIn, do that).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .database import storage_error
from .errors import ConnectivityLost
from .utils import connect_sqlite, format_timestamp, now_utc, parse_timestamp

ActionHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class QueuedAction:
    id: int
    kind: str
    payload: dict[str, Any]
    enqueued_at: datetime
    attempts: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass
class DrainReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    stopped: bool = False


def _row_to_action(row: sqlite3.Row) -> QueuedAction:
    return QueuedAction(
        id=row["id"],
        kind=row["kind"],
        payload=json.loads(row["payload"]),
        enqueued_at=parse_timestamp(row["enqueued_at"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
    )


class OfflineQueue:
    """SQLite-backed offline action queue."""

    def __init__(
        self,
        db_path: str,
        logger: logging.Logger,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._db_path = db_path
        self._logger = logger
        self._clock = clock
        self._drain_lock = asyncio.Lock()

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except sqlite3.Error as exc:
            raise storage_error(exc) from exc

    async def initialize(self) -> None:
        def _sync() -> None:
            conn = connect_sqlite(self._db_path)
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS offline_queue (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        kind TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        enqueued_at TIMESTAMP NOT NULL,
                        attempts INTEGER DEFAULT 0,
                        last_error TEXT
                    )
                """)
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Queue operations
    # ══════════════════════════════════════════════════════════

    async def enqueue(self, kind: str, payload: dict[str, Any]) -> int:
        """Append an action with attempts=0. Returns its id."""
        body = json.dumps(payload)
        enqueued_at = format_timestamp(self._clock())

        def _sync() -> int:
            conn = connect_sqlite(self._db_path)
            try:
                cursor = conn.execute(
                    "INSERT INTO offline_queue (kind, payload, enqueued_at) VALUES (?, ?, ?)",
                    (kind, body, enqueued_at),
                )
                conn.commit()
                return cursor.lastrowid
            finally:
                conn.close()

        action_id = await self._run(_sync)
        self._logger.info("Queued offline action #%d (%s)", action_id, kind)
        return action_id

    async def pending(self) -> list[QueuedAction]:
        """All queued actions in insertion order."""

        def _sync() -> list[QueuedAction]:
            conn = connect_sqlite(self._db_path)
            try:
                rows = conn.execute("SELECT * FROM offline_queue ORDER BY id ASC").fetchall()
                return [_row_to_action(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    async def size(self) -> int:
        def _sync() -> int:
            conn = connect_sqlite(self._db_path)
            try:
                return conn.execute("SELECT COUNT(*) AS cnt FROM offline_queue").fetchone()["cnt"]
            finally:
                conn.close()

        return await self._run(_sync)

    async def remove(self, action_id: int) -> bool:
        def _sync() -> bool:
            conn = connect_sqlite(self._db_path)
            try:
                cursor = conn.execute("DELETE FROM offline_queue WHERE id = ?", (action_id,))
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await self._run(_sync)

    async def _record_failure(self, action_id: int, error: str) -> None:
        def _sync() -> None:
            conn = connect_sqlite(self._db_path)
            try:
                conn.execute(
                    "UPDATE offline_queue SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                    (error, action_id),
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Drain
    # ══════════════════════════════════════════════════════════

    async def drain(self, handlers: Mapping[str, ActionHandler]) -> DrainReport:
        """Replay every queued action in FIFO order.

        A failing item keeps its place (attempts + 1) and the drain moves on
        to the next one. Losing connectivity again stops the drain.
        """
        async with self._drain_lock:
            report = DrainReport()
            for action in await self.pending():
                report.processed += 1
                handler = handlers.get(action.kind)
                if handler is None:
                    report.failed += 1
                    await self._record_failure(action.id, f"No handler for {action.kind}")
                    self._logger.warning("No handler for queued action #%d (%s)", action.id, action.kind)
                    continue

                try:
                    await handler(action.payload)
                except ConnectivityLost as e:
                    report.failed += 1
                    report.stopped = True
                    await self._record_failure(action.id, str(e))
                    self._logger.warning("Drain stopped at #%d: connectivity lost", action.id)
                    break
                except Exception as e:
                    report.failed += 1
                    await self._record_failure(action.id, str(e))
                    self._logger.info(
                        "Queued action #%d (%s) failed on replay: %s", action.id, action.kind, e,
                    )
                    continue

                await self.remove(action.id)
                report.succeeded += 1

            self._logger.info(
                "Offline queue drained: %d processed, %d ok, %d failed",
                report.processed, report.succeeded, report.failed,
            )
            return report
