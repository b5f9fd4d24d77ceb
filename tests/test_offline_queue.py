"""OfflineQueue tests: durable FIFO replay."""

from __future__ import annotations

import logging

from kryten_rewards.errors import AlreadyCheckedIn, ConnectivityLost
from kryten_rewards.offline_queue import OfflineQueue

from tests.conftest import FakeClock


class TestEnqueue:

    async def test_enqueue_and_pending_order(self, offline_queue: OfflineQueue):
        first = await offline_queue.enqueue("check_in", {"account_id": "alice"})
        second = await offline_queue.enqueue("spin_wheel", {"account_id": "alice"})
        assert second > first

        pending = await offline_queue.pending()
        assert [a.kind for a in pending] == ["check_in", "spin_wheel"]
        assert pending[0].payload == {"account_id": "alice"}
        assert pending[0].attempts == 0
        assert await offline_queue.size() == 2

    async def test_survives_restart(self, offline_queue: OfflineQueue, tmp_state_path: str, clock: FakeClock):
        await offline_queue.enqueue("check_in", {"account_id": "alice"})
        reopened = OfflineQueue(tmp_state_path, logging.getLogger("test"), clock=clock)
        await reopened.initialize()
        pending = await reopened.pending()
        assert len(pending) == 1
        assert pending[0].enqueued_at == clock.now

    async def test_remove(self, offline_queue: OfflineQueue):
        action_id = await offline_queue.enqueue("check_in", {"account_id": "alice"})
        assert await offline_queue.remove(action_id) is True
        assert await offline_queue.remove(action_id) is False


class TestDrain:

    async def test_partial_failure(self, offline_queue: OfflineQueue):
        """3 queued, 2 fail, 1 succeeds → only the success is removed."""
        calls: list[str] = []

        async def handler(payload):
            calls.append(payload["account_id"])
            if payload["account_id"] != "bob":
                raise AlreadyCheckedIn()
            return "ok"

        for account_id in ("alice", "bob", "carol"):
            await offline_queue.enqueue("check_in", {"account_id": account_id})

        report = await offline_queue.drain({"check_in": handler})
        assert calls == ["alice", "bob", "carol"]
        assert (report.processed, report.succeeded, report.failed) == (3, 1, 2)
        assert report.stopped is False

        pending = await offline_queue.pending()
        assert [a.payload["account_id"] for a in pending] == ["alice", "carol"]
        assert all(a.attempts == 1 for a in pending)
        assert pending[0].last_error == "Already checked in today."

    async def test_connectivity_lost_stops_drain(self, offline_queue: OfflineQueue):
        async def handler(payload):
            if payload["n"] == 2:
                raise ConnectivityLost()

        for n in (1, 2, 3):
            await offline_queue.enqueue("add_coins", {"n": n})

        report = await offline_queue.drain({"add_coins": handler})
        assert report.stopped is True
        assert (report.processed, report.succeeded, report.failed) == (2, 1, 1)

        pending = await offline_queue.pending()
        assert [(a.payload["n"], a.attempts) for a in pending] == [(2, 1), (3, 0)]

    async def test_missing_handler(self, offline_queue: OfflineQueue):
        await offline_queue.enqueue("mystery", {})
        report = await offline_queue.drain({})
        assert report.failed == 1
        pending = await offline_queue.pending()
        assert pending[0].attempts == 1
        assert "No handler" in pending[0].last_error

    async def test_empty_drain(self, offline_queue: OfflineQueue):
        report = await offline_queue.drain({})
        assert report.processed == 0
