"""Rewards service — the entry point for callers.

Resolves the actor, applies rate limits and routes each mutating call
either to the Ledger (online) or to the offline queue (offline, or when the
store is lost mid-call). Replays from the queue come back through the same
operation table.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Any

from .errors import (
    FailureKind,
    NotAuthenticated,
    RewardsError,
    StorageUnavailable,
    classify_failure,
)
from .models import EARNING_TYPES, QueuedResult, TransactionType

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import Account
    from .offline_queue import DrainReport, OfflineQueue
    from .rate_limiter import RateLimiter


# Operation kind → rate-limit action (None = not limited)
RATE_LIMITED_ACTIONS: dict[str, str | None] = {
    "open_account": "signup",
    "check_in": "checkin",
    "spin_wheel": "spin",
    "add_coins": None,
    "reward_video": None,
    "reward_ad": None,
    "complete_task": None,
    "request_withdrawal": "withdrawal",
}


class RewardsService:
    """Online/offline aware facade over the Ledger."""

    def __init__(
        self,
        ledger: Ledger,
        rate_limiter: RateLimiter,
        offline_queue: OfflineQueue,
        logger: logging.Logger,
    ) -> None:
        self._ledger = ledger
        self._limiter = rate_limiter
        self._queue = offline_queue
        self._logger = logger
        self._online = True
        # Clear while a drain runs; online mutations wait on it
        self._drained = asyncio.Event()
        self._drained.set()
        self._drains_active = 0
        self._replay_handlers = {
            kind: functools.partial(self._replay, kind) for kind in self._OPERATIONS
        }

        # Counters (for metrics)
        self.actions_queued_total = 0
        self.actions_replayed_total = 0

    # ══════════════════════════════════════════════════════════
    #  Connectivity
    # ══════════════════════════════════════════════════════════

    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> DrainReport | None:
        """Record connectivity. Coming back online drains the queue."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            self._logger.info("Connectivity restored, draining offline queue")
            return await self.drain_queue()
        if not online and was_online:
            self._logger.warning("Connectivity lost, mutating actions will be queued")
        return None

    async def drain_queue(self) -> DrainReport:
        self._drains_active += 1
        self._drained.clear()
        try:
            report = await self._queue.drain(self._replay_handlers)
            self.actions_replayed_total += report.succeeded
            if report.stopped:
                self._online = False
            return report
        finally:
            self._drains_active -= 1
            if not self._drains_active:
                self._drained.set()

    async def queue_status(self) -> dict[str, Any]:
        pending = await self._queue.pending()
        return {
            "online": self._online,
            "size": len(pending),
            "pending": [action.to_dict() for action in pending],
        }

    # ══════════════════════════════════════════════════════════
    #  Dispatch
    # ══════════════════════════════════════════════════════════

    async def _admit(self, kind: str, account_id: str) -> None:
        action = RATE_LIMITED_ACTIONS.get(kind)
        if action:
            await self._limiter.check(account_id, action)

    async def _defer(self, kind: str, payload: dict[str, Any]) -> QueuedResult:
        queue_id = await self._queue.enqueue(kind, payload)
        self.actions_queued_total += 1
        return QueuedResult(queue_id=queue_id, kind=kind)

    async def _submit(self, kind: str, payload: dict[str, Any]) -> Any:
        account_id = payload.get("account_id")
        if not account_id:
            raise NotAuthenticated()

        if self._online and not self._drained.is_set():
            await self._drained.wait()
        if not self._online:
            return await self._defer(kind, payload)

        await self._admit(kind, account_id)
        try:
            return await self._OPERATIONS[kind](self, payload)
        except RewardsError as e:
            failure = classify_failure(e)
            if failure is FailureKind.QUEUEABLE:
                await self.set_online(False)
                # Already counted against the rate limit
                return await self._defer(kind, {**payload, "admitted": True})
            if failure is FailureKind.RETRYABLE and not isinstance(e, StorageUnavailable):
                raise StorageUnavailable(account_id=account_id) from e
            raise

    async def _replay(self, kind: str, payload: dict[str, Any]) -> Any:
        if not payload.get("admitted"):
            await self._admit(kind, payload["account_id"])
        return await self._OPERATIONS[kind](self, payload)

    # ── Operation table (payload → Ledger call) ──────────────

    async def _op_open_account(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.open_account(payload["account_id"], payload.get("referred_by"))

    async def _op_check_in(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.check_in(payload["account_id"])

    async def _op_spin_wheel(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.spin_wheel(payload["account_id"])

    async def _op_add_coins(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.add_coins(
            payload["account_id"], payload["amount"], payload["kind"], payload.get("description", ""),
        )

    async def _op_reward_video(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.reward_video(payload["account_id"])

    async def _op_reward_ad(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.reward_ad(payload["account_id"])

    async def _op_complete_task(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.complete_task(payload["account_id"], payload["task_id"])

    async def _op_request_withdrawal(self, payload: dict[str, Any]) -> Any:
        return await self._ledger.request_withdrawal(
            payload["account_id"], payload["method"], payload["account"], payload["amount"],
        )

    _OPERATIONS: dict[str, Any] = {
        "open_account": _op_open_account,
        "check_in": _op_check_in,
        "spin_wheel": _op_spin_wheel,
        "add_coins": _op_add_coins,
        "reward_video": _op_reward_video,
        "reward_ad": _op_reward_ad,
        "complete_task": _op_complete_task,
        "request_withdrawal": _op_request_withdrawal,
    }

    # ══════════════════════════════════════════════════════════
    #  Public operations
    # ══════════════════════════════════════════════════════════

    async def open_account(self, account_id: str, referred_by: str | None = None):
        """Returns (Account, created) or QueuedResult."""
        return await self._submit("open_account", {"account_id": account_id, "referred_by": referred_by})

    async def check_in(self, account_id: str):
        return await self._submit("check_in", {"account_id": account_id})

    async def spin_wheel(self, account_id: str):
        return await self._submit("spin_wheel", {"account_id": account_id})

    async def add_coins(self, account_id: str, amount: int, kind: TransactionType | str, description: str = ""):
        tx_type = TransactionType(kind)
        if tx_type not in EARNING_TYPES:
            raise ValueError(f"{tx_type.value} is not an earning type")
        return await self._submit("add_coins", {
            "account_id": account_id,
            "amount": amount,
            "kind": tx_type.value,
            "description": description,
        })

    async def reward_video(self, account_id: str):
        return await self._submit("reward_video", {"account_id": account_id})

    async def reward_ad(self, account_id: str):
        return await self._submit("reward_ad", {"account_id": account_id})

    async def complete_task(self, account_id: str, task_id: str):
        return await self._submit("complete_task", {"account_id": account_id, "task_id": task_id})

    async def request_withdrawal(self, account_id: str, method: str, account: str, amount: Any):
        # Stored as text so the queued payload stays JSON
        return await self._submit("request_withdrawal", {
            "account_id": account_id,
            "method": method,
            "account": account,
            "amount": str(amount),
        })

    async def get_account(self, account_id: str) -> Account:
        if not account_id:
            raise NotAuthenticated()
        return await self._ledger.get_account(account_id)

    async def get_withdrawals(self, account_id: str, limit: int = 10):
        if not account_id:
            raise NotAuthenticated()
        return await self._ledger.get_withdrawals(account_id, limit)
