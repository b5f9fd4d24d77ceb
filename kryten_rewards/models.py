"""Ledger data types: accounts, transactions, withdrawals and results."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .utils import now_utc


class TransactionType(Enum):
    CHECKIN = "checkin"
    SPIN_WHEEL = "spin_wheel"
    VIDEO_REWARD = "video_reward"
    AD_WATCH = "ad_watch"
    TASK_COMPLETION = "task_completion"
    REFERRAL_BONUS = "referral_bonus"
    WEEKLY_BONUS = "weekly_bonus"
    WITHDRAWAL = "withdrawal"


# Kinds accepted by add_coins from collaborators
EARNING_TYPES = frozenset({
    TransactionType.CHECKIN,
    TransactionType.SPIN_WHEEL,
    TransactionType.VIDEO_REWARD,
    TransactionType.AD_WATCH,
    TransactionType.TASK_COMPLETION,
})


class WithdrawalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Account:
    """Snapshot of one account record. ``version`` bumps on every commit."""

    account_id: str
    coins: int = 0
    balance: Decimal = Decimal("0")
    today_earned: Decimal = Decimal("0")
    total_earned: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")
    check_in_streak: int = 0
    last_check_in: datetime | None = None
    last_earn_date: datetime = field(default_factory=now_utc)
    spins_remaining: int = 0
    completed_tasks: int = 0
    weekly_bonus_claimed: bool = False
    weekly_bonus_week: str | None = None
    referred_by: str | None = None
    total_referrals: int = 0
    referral_earnings: int = 0
    created_at: datetime = field(default_factory=now_utc)
    version: int = 0

    def apply(self, changes: dict[str, Any]) -> Account:
        """Return a copy with ``changes`` applied and the version bumped."""
        return replace(self, **changes, version=self.version + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "coins": self.coins,
            "balance": str(self.balance),
            "today_earned": str(self.today_earned),
            "total_earned": str(self.total_earned),
            "total_withdrawn": str(self.total_withdrawn),
            "check_in_streak": self.check_in_streak,
            "last_check_in": self.last_check_in.isoformat() if self.last_check_in else None,
            "spins_remaining": self.spins_remaining,
            "completed_tasks": self.completed_tasks,
            "weekly_bonus_claimed": self.weekly_bonus_claimed,
            "total_referrals": self.total_referrals,
            "referral_earnings": self.referral_earnings,
        }


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger entry.

    ``amount`` is in coins for earnings and in currency for withdrawals;
    ``balance_delta`` is always the signed currency change.
    """

    account_id: str
    type: TransactionType
    amount: Decimal
    balance_delta: Decimal
    description: str
    timestamp: datetime = field(default_factory=now_utc)
    status: WithdrawalStatus | None = None
    reference: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class Withdrawal:
    id: str
    account_id: str
    method: str
    account: str
    amount: Decimal
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "account": self.account,
            "amount": str(self.amount),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════
#  Operation results
# ═══════════════════════════════════════════════════════════════


@dataclass
class EarnResult:
    coins: int
    balance_increment: Decimal
    balance: Decimal
    milestone_bonus: int | None = None


@dataclass
class CheckInResult:
    reward: int
    streak: int
    milestone_bonus: int | None = None


@dataclass
class SpinResult:
    reward: int
    remaining: int
    milestone_bonus: int | None = None


@dataclass
class TaskResult:
    task_id: str
    reward: int
    milestone_bonus: int | None = None


@dataclass
class WithdrawalResult:
    withdrawal_id: str
    amount: Decimal
    balance: Decimal
    status: WithdrawalStatus = WithdrawalStatus.PENDING


@dataclass
class QueuedResult:
    """Returned instead of a ledger result when an action was deferred."""

    queue_id: int
    kind: str
    queued: bool = True
