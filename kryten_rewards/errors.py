"""Typed failure taxonomy for the rewards ledger.

Every failure carries a machine-readable ``code`` and a short
``user_message``. ``classify_failure`` decides how a failure is handled:
surfaced as-is, retried, or redirected into the offline queue.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any


class FailureKind(Enum):
    TERMINAL = "terminal"
    RETRYABLE = "retryable"
    QUEUEABLE = "queueable"


class RewardsError(Exception):
    """Base class for all ledger and service failures."""

    code = "UNKNOWN_ERROR"
    user_message = "An unexpected error occurred."
    kind = FailureKind.TERMINAL

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.user_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


# ── Validation / business rules (terminal) ───────────────────


class NotAuthenticated(RewardsError):
    code = "NOT_AUTHENTICATED"
    user_message = "Please sign in to continue."


class AccountNotFound(RewardsError):
    code = "ACCOUNT_NOT_FOUND"
    user_message = "Account not found."


class InvalidAmount(RewardsError):
    code = "INVALID_AMOUNT"
    user_message = "Invalid amount."


class InvalidAccountNumber(RewardsError):
    code = "INVALID_ACCOUNT_NUMBER"
    user_message = "Invalid account number."


class DailyLimitExceeded(RewardsError):
    code = "DAILY_LIMIT_EXCEEDED"
    user_message = "Daily earning limit reached."


class AlreadyCheckedIn(RewardsError):
    code = "ALREADY_CHECKED_IN"
    user_message = "Already checked in today."


class NoSpinsLeft(RewardsError):
    code = "NO_SPINS_LEFT"
    user_message = "No spins left today."


class InsufficientBalance(RewardsError):
    code = "INSUFFICIENT_BALANCE"
    user_message = "Insufficient balance."


class WithdrawalMethodUnavailable(RewardsError):
    code = "WITHDRAWAL_METHOD_UNAVAILABLE"
    user_message = "Selected payment method is not available."


class WithdrawalDailyLimitExceeded(RewardsError):
    code = "WITHDRAWAL_DAILY_LIMIT_EXCEEDED"
    user_message = "Daily withdrawal limit reached."


class TaskNotFound(RewardsError):
    code = "TASK_NOT_FOUND"
    user_message = "Task not found."


class TaskAlreadyCompleted(RewardsError):
    code = "TASK_ALREADY_COMPLETED"
    user_message = "Task already completed."


class RateLimitExceeded(RewardsError):
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after: float, message: str | None = None) -> None:
        self.retry_after = max(0.0, retry_after)
        minutes = max(1, math.ceil(self.retry_after / 60))
        super().__init__(
            message or f"Rate limit exceeded. Please try again in {minutes} minutes.",
            retry_after=self.retry_after,
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


# ── Storage (transient) ──────────────────────────────────────


class WriteConflict(RewardsError):
    """Account changed between read and conditional commit."""

    code = "WRITE_CONFLICT"
    user_message = "The account was updated concurrently. Please try again."
    kind = FailureKind.RETRYABLE


class StorageUnavailable(RewardsError):
    code = "STORAGE_UNAVAILABLE"
    user_message = "Service temporarily unavailable. Please try again."
    kind = FailureKind.RETRYABLE


class ConnectivityLost(StorageUnavailable):
    code = "CONNECTIVITY_LOST"
    user_message = "Network error. Please check your connection."
    kind = FailureKind.QUEUEABLE


def classify_failure(exc: BaseException) -> FailureKind:
    """Decide how a failure is handled. Unknown exceptions are terminal."""
    if isinstance(exc, RewardsError):
        return exc.kind
    return FailureKind.TERMINAL
