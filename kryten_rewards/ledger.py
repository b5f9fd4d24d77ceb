"""Ledger — the only component that mutates accounts.

Every operation runs the same cycle against one account:

    read snapshot → build changes + transactions → conditional commit

The commit is ``AccountStore.atomic_update`` keyed by the snapshot's
``version``. If another writer got there first the store raises
WriteConflict and the whole cycle (including every business check) runs
again on a fresh read, with exponential backoff between attempts. Two
concurrent calls can therefore never both pass a cap or availability check
against the same stale snapshot.

Calendar-day rules (check-in days, daily cap rollover, daily withdrawal
totals, weekly bonus reset) go through one ``CalendarPolicy``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from .errors import (
    AccountNotFound,
    AlreadyCheckedIn,
    DailyLimitExceeded,
    FailureKind,
    InsufficientBalance,
    InvalidAccountNumber,
    InvalidAmount,
    NoSpinsLeft,
    RewardsError,
    TaskAlreadyCompleted,
    TaskNotFound,
    WithdrawalDailyLimitExceeded,
    WithdrawalMethodUnavailable,
    classify_failure,
)
from .models import (
    EARNING_TYPES,
    Account,
    CheckInResult,
    EarnResult,
    SpinResult,
    TaskResult,
    Transaction,
    TransactionType,
    Withdrawal,
    WithdrawalResult,
    WithdrawalStatus,
)
from .utils import CalendarPolicy, now_utc, to_money

if TYPE_CHECKING:
    from .config import AppSettings, EarningRates, RewardsConfig
    from .remote_config import ConfigProvider
    from .store import AccountStore
    from .transaction_log import TransactionLog


@dataclass
class Mutation:
    """Output of a build step: what one commit will write."""

    changes: dict[str, Any]
    transactions: list[Transaction] = field(default_factory=list)
    withdrawal: Withdrawal | None = None
    result: Any = None


BuildFn = Callable[[Account, datetime], Awaitable["Mutation | None"]]


class Ledger:
    """Atomic account mutation engine."""

    def __init__(
        self,
        config: RewardsConfig,
        store: AccountStore,
        transaction_log: TransactionLog,
        config_provider: ConfigProvider,
        logger: logging.Logger,
        clock: Callable[[], datetime] = now_utc,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._log = transaction_log
        self._provider = config_provider
        self._logger = logger
        self._clock = clock
        self._rng = rng or random.Random()
        self._calendar = CalendarPolicy(config.calendar.timezone)

        # Counters (for metrics)
        self.commits_total = 0
        self.conflicts_total = 0

    def update_config(self, new_config: RewardsConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config
        self._calendar = CalendarPolicy(new_config.calendar.timezone)

    @property
    def calendar(self) -> CalendarPolicy:
        return self._calendar

    # ══════════════════════════════════════════════════════════
    #  Commit cycle
    # ══════════════════════════════════════════════════════════

    async def _commit(
        self, account_id: str, op: str, build: BuildFn,
    ) -> tuple[Account, Mutation | None]:
        """Run read → build → conditional commit with bounded retries.

        ``build`` may return None to signal that nothing needs writing.
        """
        cfg = self._config.ledger
        attempt = 0
        while True:
            attempt += 1
            try:
                account = await self._store.get(account_id)
                if account is None:
                    raise AccountNotFound(account_id=account_id)
                mutation = await build(account, self._clock())
                if mutation is None:
                    return account, None
                updated = await self._store.atomic_update(
                    account_id,
                    account.version,
                    mutation.changes,
                    mutation.transactions,
                    mutation.withdrawal,
                )
            except RewardsError as e:
                if classify_failure(e) is not FailureKind.RETRYABLE:
                    raise
                self.conflicts_total += 1
                if attempt >= cfg.commit_max_attempts:
                    self._logger.error(
                        "%s for %s failed after %d attempts: %s", op, account_id, attempt, e.code,
                    )
                    raise
                delay = min(cfg.backoff_base_seconds * (2 ** (attempt - 1)), cfg.backoff_max_seconds)
                self._logger.warning(
                    "%s for %s: %s, retry %d/%d in %.2fs",
                    op, account_id, e.code, attempt, cfg.commit_max_attempts, delay,
                )
                await asyncio.sleep(delay)
                continue

            self.commits_total += 1
            return updated, mutation

    # ══════════════════════════════════════════════════════════
    #  Shared build helpers
    # ══════════════════════════════════════════════════════════

    def _rolled(self, account: Account, now: datetime, app: AppSettings) -> tuple[Account, dict[str, Any]]:
        """Apply the lazy daily rollover. Returns (view, changes)."""
        changes: dict[str, Any] = {}
        last = account.last_earn_date
        if last is None or self._calendar.local_date(last) < self._calendar.local_date(now):
            changes["today_earned"] = Decimal("0")
            changes["spins_remaining"] = app.max_daily_spins
        return replace(account, **changes), changes

    def _bonus_claimed(self, account: Account, now: datetime) -> bool:
        return (
            account.weekly_bonus_claimed
            and account.weekly_bonus_week == self._calendar.iso_week(now)
        )

    def _earning_changes(
        self,
        current: Account,
        coins: int,
        rates: EarningRates,
        now: datetime,
        *,
        capped: bool = True,
        count_task: bool = True,
    ) -> tuple[dict[str, Any], Decimal]:
        """Field updates for crediting ``coins``; both denominations move together."""
        increment = to_money(Decimal(coins) / Decimal(str(rates.coin_to_bdt_rate)))
        changes: dict[str, Any] = {
            "coins": current.coins + coins,
            "balance": current.balance + increment,
            "total_earned": current.total_earned + increment,
            "last_earn_date": now,
        }
        if capped:
            cap = Decimal(str(self._config.ledger.daily_earn_cap))
            if current.today_earned + increment > cap:
                raise DailyLimitExceeded(
                    f"Daily earning limit of {cap} reached.",
                    today_earned=str(current.today_earned),
                )
            changes["today_earned"] = current.today_earned + increment
        if count_task:
            changes["completed_tasks"] = current.completed_tasks + 1
        return changes, increment

    def _whole_coins(self, amount: Any) -> int:
        upper = self._config.ledger.max_single_award
        if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
            raise InvalidAmount()
        try:
            coins = int(amount)
        except (OverflowError, ValueError, InvalidOperation):
            raise InvalidAmount() from None
        if coins != amount or coins <= 0 or coins > upper:
            raise InvalidAmount(f"Amount must be a whole number between 1 and {upper}.")
        return coins

    async def _after_earning(self, account_id: str) -> int | None:
        """Milestone evaluation once an earning has committed.

        A failure here must not be reported as a failure of the earning
        itself, which is already durable.
        """
        try:
            return await self.check_milestone(account_id)
        except RewardsError:
            self._logger.exception("Milestone evaluation failed for %s", account_id)
            return None

    # ══════════════════════════════════════════════════════════
    #  Accounts & referrals
    # ══════════════════════════════════════════════════════════

    async def open_account(
        self, account_id: str, referred_by: str | None = None,
    ) -> tuple[Account, bool]:
        """Create an account if missing. Returns (account, created).

        A valid ``referred_by`` credits the referrer and the new account.
        """
        app = await self._provider.get_app_settings()
        if referred_by == account_id:
            referred_by = None
        if referred_by and await self._store.get(referred_by) is None:
            self._logger.info("Unknown referrer %s for new account %s", referred_by, account_id)
            referred_by = None

        now = self._clock()
        account, created = await self._store.create(Account(
            account_id=account_id,
            spins_remaining=app.max_daily_spins,
            last_earn_date=now,
            created_at=now,
            referred_by=referred_by,
        ))
        if not created:
            return account, False
        self._logger.info("Opened account %s", account_id)

        if referred_by:
            rates = await self._provider.get_earning_rates()
            if rates.referral_bonus > 0:
                await self._credit_referral(
                    referred_by, rates.referral_bonus, rates,
                    description=f"New user joined with your code: {account_id}",
                    reference=account_id,
                    count_referral=True,
                )
            if rates.invitee_bonus > 0:
                account = await self._credit_referral(
                    account_id, rates.invitee_bonus, rates,
                    description="Welcome bonus for joining with an invite code",
                    reference=referred_by,
                    count_referral=False,
                )
        return account, True

    async def _credit_referral(
        self,
        account_id: str,
        coins: int,
        rates: EarningRates,
        description: str,
        reference: str,
        count_referral: bool,
    ) -> Account:
        app = await self._provider.get_app_settings()

        async def build(account: Account, now: datetime) -> Mutation:
            current, changes = self._rolled(account, now, app)
            earn, increment = self._earning_changes(
                current, coins, rates, now, capped=False, count_task=False,
            )
            changes.update(earn)
            if count_referral:
                changes["total_referrals"] = current.total_referrals + 1
                changes["referral_earnings"] = current.referral_earnings + coins
            tx = Transaction(
                account_id=account_id,
                type=TransactionType.REFERRAL_BONUS,
                amount=Decimal(coins),
                balance_delta=increment,
                description=description,
                timestamp=now,
                reference=reference,
            )
            return Mutation(changes, [tx])

        updated, _ = await self._commit(account_id, "referral_bonus", build)
        return updated

    async def get_account(self, account_id: str) -> Account:
        account = await self._store.get(account_id)
        if account is None:
            raise AccountNotFound(account_id=account_id)
        return account

    # ══════════════════════════════════════════════════════════
    #  Earning operations
    # ══════════════════════════════════════════════════════════

    async def add_coins(
        self,
        account_id: str,
        amount: int,
        kind: TransactionType | str,
        description: str,
    ) -> EarnResult:
        """Credit ``amount`` coins of an earning ``kind``."""
        coins = self._whole_coins(amount)
        tx_type = TransactionType(kind)
        if tx_type not in EARNING_TYPES:
            raise ValueError(f"{tx_type.value} is not an earning type")
        rates = await self._provider.get_earning_rates()
        app = await self._provider.get_app_settings()

        async def build(account: Account, now: datetime) -> Mutation:
            current, changes = self._rolled(account, now, app)
            earn, increment = self._earning_changes(current, coins, rates, now)
            changes.update(earn)
            tx = Transaction(
                account_id=account_id,
                type=tx_type,
                amount=Decimal(coins),
                balance_delta=increment,
                description=description,
                timestamp=now,
            )
            return Mutation(changes, [tx], result=increment)

        updated, mutation = await self._commit(account_id, "add_coins", build)
        bonus = await self._after_earning(account_id)
        return EarnResult(
            coins=coins,
            balance_increment=mutation.result,
            balance=updated.balance,
            milestone_bonus=bonus,
        )

    async def reward_video(self, account_id: str) -> EarnResult:
        rates = await self._provider.get_earning_rates()
        amount = self._rng.randint(rates.video_rewards.min, rates.video_rewards.max)
        return await self.add_coins(account_id, amount, TransactionType.VIDEO_REWARD, "Video reward")

    async def reward_ad(self, account_id: str) -> EarnResult:
        rates = await self._provider.get_earning_rates()
        amount = self._rng.randint(rates.ad_rewards.min, rates.ad_rewards.max)
        return await self.add_coins(account_id, amount, TransactionType.AD_WATCH, "Rewarded ad")

    async def check_in(self, account_id: str) -> CheckInResult:
        """Daily check-in with a 7-day streak table."""
        rates = await self._provider.get_earning_rates()
        app = await self._provider.get_app_settings()

        async def build(account: Account, now: datetime) -> Mutation:
            if self._calendar.is_same_day(account.last_check_in, now):
                raise AlreadyCheckedIn()
            if self._calendar.is_previous_day(account.last_check_in, now):
                streak = min(account.check_in_streak + 1, 7)
            else:
                streak = 1
            reward = rates.checkin_reward(streak)

            current, changes = self._rolled(account, now, app)
            earn, increment = self._earning_changes(current, reward, rates, now)
            changes.update(earn)
            # Day 7 pays out and restarts the cycle
            changes["check_in_streak"] = 0 if streak == 7 else streak
            changes["last_check_in"] = now
            tx = Transaction(
                account_id=account_id,
                type=TransactionType.CHECKIN,
                amount=Decimal(reward),
                balance_delta=increment,
                description=f"Day {streak} check-in reward",
                timestamp=now,
            )
            return Mutation(changes, [tx], result=CheckInResult(reward=reward, streak=streak))

        _, mutation = await self._commit(account_id, "check_in", build)
        result: CheckInResult = mutation.result
        result.milestone_bonus = await self._after_earning(account_id)
        self._logger.debug("Check-in %s: day %d, %d coins", account_id, result.streak, result.reward)
        return result

    async def spin_wheel(self, account_id: str) -> SpinResult:
        """Spend one spin for a uniformly chosen wheel segment."""
        rates = await self._provider.get_earning_rates()
        app = await self._provider.get_app_settings()

        async def build(account: Account, now: datetime) -> Mutation:
            current, changes = self._rolled(account, now, app)
            if current.spins_remaining <= 0:
                raise NoSpinsLeft()
            reward = self._rng.choice(rates.spin_rewards)
            earn, increment = self._earning_changes(current, reward, rates, now)
            changes.update(earn)
            remaining = current.spins_remaining - 1
            changes["spins_remaining"] = remaining
            tx = Transaction(
                account_id=account_id,
                type=TransactionType.SPIN_WHEEL,
                amount=Decimal(reward),
                balance_delta=increment,
                description="Spin wheel reward",
                timestamp=now,
            )
            return Mutation(changes, [tx], result=SpinResult(reward=reward, remaining=remaining))

        _, mutation = await self._commit(account_id, "spin_wheel", build)
        result: SpinResult = mutation.result
        result.milestone_bonus = await self._after_earning(account_id)
        return result

    async def complete_task(self, account_id: str, task_id: str) -> TaskResult:
        """Credit an active task once per account."""
        task = await self._provider.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id=task_id)
        coins = self._whole_coins(task.reward)
        rates = await self._provider.get_earning_rates()
        app = await self._provider.get_app_settings()

        async def build(account: Account, now: datetime) -> Mutation:
            if await self._log.find(account_id, TransactionType.TASK_COMPLETION, task_id):
                raise TaskAlreadyCompleted(task_id=task_id)
            current, changes = self._rolled(account, now, app)
            earn, increment = self._earning_changes(current, coins, rates, now)
            changes.update(earn)
            tx = Transaction(
                account_id=account_id,
                type=TransactionType.TASK_COMPLETION,
                amount=Decimal(coins),
                balance_delta=increment,
                description=f"Task completed: {task.title or task_id}",
                timestamp=now,
                reference=task_id,
            )
            return Mutation(changes, [tx], result=TaskResult(task_id=task_id, reward=coins))

        _, mutation = await self._commit(account_id, "complete_task", build)
        result: TaskResult = mutation.result
        result.milestone_bonus = await self._after_earning(account_id)
        return result

    async def check_milestone(self, account_id: str) -> int | None:
        """Pay the weekly bonus once the completed-task threshold is reached.

        Returns the bonus paid, or None when nothing was due.
        """
        cfg = self._config.milestone
        rates = await self._provider.get_earning_rates()
        app = await self._provider.get_app_settings()

        async def build(account: Account, now: datetime) -> Mutation | None:
            if account.completed_tasks < cfg.task_threshold or self._bonus_claimed(account, now):
                return None
            bonus = self._rng.randint(cfg.bonus_min, cfg.bonus_max)
            current, changes = self._rolled(account, now, app)
            earn, increment = self._earning_changes(
                current, bonus, rates, now, capped=False, count_task=False,
            )
            changes.update(earn)
            changes["weekly_bonus_claimed"] = True
            changes["weekly_bonus_week"] = self._calendar.iso_week(now)
            changes["completed_tasks"] = 0
            tx = Transaction(
                account_id=account_id,
                type=TransactionType.WEEKLY_BONUS,
                amount=Decimal(bonus),
                balance_delta=increment,
                description="Weekly milestone bonus",
                timestamp=now,
            )
            return Mutation(changes, [tx], result=bonus)

        _, mutation = await self._commit(account_id, "check_milestone", build)
        if mutation is None:
            return None
        self._logger.info("Weekly milestone bonus for %s: %d coins", account_id, mutation.result)
        return mutation.result

    # ══════════════════════════════════════════════════════════
    #  Withdrawals
    # ══════════════════════════════════════════════════════════

    async def request_withdrawal(
        self, account_id: str, method: str, account: str, amount: Any,
    ) -> WithdrawalResult:
        """Debit ``amount`` (currency) and open a pending withdrawal."""
        settings = await self._provider.get_withdrawal_settings()
        if settings.status != "active":
            raise WithdrawalMethodUnavailable("Withdrawals are currently disabled.")
        method_cfg = settings.find_method(method)
        if method_cfg is None or not method_cfg.enabled:
            raise WithdrawalMethodUnavailable()
        if not isinstance(account, str) or not re.fullmatch(settings.account_pattern, account):
            raise InvalidAccountNumber()

        if isinstance(amount, bool):
            raise InvalidAmount()
        try:
            value = to_money(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmount() from None
        if not value.is_finite():
            raise InvalidAmount()
        if value < to_money(settings.min_amount):
            raise InvalidAmount(f"Minimum withdrawal is ৳{settings.min_amount:g}")
        if value > to_money(settings.max_amount):
            raise InvalidAmount(f"Maximum withdrawal is ৳{settings.max_amount:g}")
        daily_limit = to_money(settings.daily_limit)

        async def build(snapshot: Account, now: datetime) -> Mutation:
            today = await self._log.sum_by_account_since(
                account_id, self._calendar.start_of_day(now), TransactionType.WITHDRAWAL,
            )
            if today + value > daily_limit:
                raise WithdrawalDailyLimitExceeded(
                    f"Daily withdrawal limit is ৳{settings.daily_limit:g}",
                )
            if value > snapshot.balance:
                raise InsufficientBalance()

            withdrawal = Withdrawal(
                id=uuid.uuid4().hex,
                account_id=account_id,
                method=method,
                account=account,
                amount=value,
                created_at=now,
                updated_at=now,
            )
            tx = Transaction(
                account_id=account_id,
                type=TransactionType.WITHDRAWAL,
                amount=value,
                balance_delta=-value,
                description=f"Withdrawal via {method_cfg.name}",
                timestamp=now,
                status=WithdrawalStatus.PENDING,
                reference=withdrawal.id,
            )
            changes = {
                "balance": snapshot.balance - value,
                "total_withdrawn": snapshot.total_withdrawn + value,
            }
            return Mutation(changes, [tx], withdrawal=withdrawal)

        updated, mutation = await self._commit(account_id, "request_withdrawal", build)
        self._logger.info(
            "Withdrawal %s requested by %s: %s via %s",
            mutation.withdrawal.id, account_id, value, method,
        )
        return WithdrawalResult(
            withdrawal_id=mutation.withdrawal.id,
            amount=value,
            balance=updated.balance,
        )

    async def get_withdrawals(self, account_id: str, limit: int = 10) -> list[Withdrawal]:
        return await self._store.get_withdrawals(account_id, limit)

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal | None:
        return await self._store.get_withdrawal(withdrawal_id)
