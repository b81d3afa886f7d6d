"""
Reconciliation and read-path self-healing.

``sync_balance`` recomputes the cached balance from the ledger. The balance
snapshot serves the authoritative subscription type when the cached one has
drifted, and schedules the cache repair to run after the response.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from memo_guard.config.loader import QuotaConfig
from memo_guard.storage.db import DEFAULT_DB_PATH
from memo_guard.storage.ledger_repository import LedgerRepository

from .calendar import day_bounds, isoformat, utc_now
from .checkin import CheckInService
from .guardrails import QuotaGate
from .ledger import BalanceSync, LedgerService
from .tiers import resolve_tier

logger = logging.getLogger(__name__)

FREE_SUBSCRIPTION = "FREE"

PLAN_TYPE_MAP = {
    1: "monthly_continuous",
    2: "quarterly_continuous",
    3: "yearly_continuous",
}

# Receives the repair callable and its arguments, e.g. BackgroundTasks.add_task
RepairScheduler = Callable[..., Any]


class ReconciliationService:

    def __init__(self, db_path: str = DEFAULT_DB_PATH, quota: Optional[QuotaConfig] = None):
        self.repository = LedgerRepository(db_path)
        self.ledger = LedgerService(db_path)
        self.check_ins = CheckInService(db_path)
        self.quota = QuotaGate(quota or QuotaConfig(), db_path)

    def sync_balance(self, wallet_address: str, now: Optional[datetime] = None) -> BalanceSync:
        """Recompute the cached balance from the ledger; safe to repeat."""
        return self.ledger.reconcile_balance(wallet_address, now)

    def repair_subscription_type(self, wallet_address: str, subscription_type: str) -> None:
        """Overwrite the cached subscription type with the authoritative one."""
        self.repository.set_subscription_type(
            wallet_address, subscription_type, isoformat(utc_now())
        )
        logger.info(f"Repaired subscription type for {wallet_address}: {subscription_type}")

    def resolve_subscription_type(
        self,
        wallet_address: str,
        cached_type: str,
        schedule: Optional[RepairScheduler] = None
    ) -> str:
        """Authoritative subscription type for a wallet.

        When an active subscription maps to a plan type different from the
        cached one, the authoritative value is returned at once and the cache
        repair is handed to ``schedule``. Without a scheduler the repair runs
        inline.

        Args:
            wallet_address: Wallet being read
            cached_type: ``accounts.subscription_type``
            schedule: Deferred-execution hook, called as
                ``schedule(repair, wallet_address, correct_type)``

        Returns:
            The subscription type to serve
        """
        plan_type = self.repository.active_subscription_plan(wallet_address)
        correct_type = PLAN_TYPE_MAP.get(plan_type, FREE_SUBSCRIPTION)
        if plan_type is None or correct_type == FREE_SUBSCRIPTION or correct_type == cached_type:
            return cached_type

        logger.info(
            f"Subscription type drift for {wallet_address}: {cached_type} -> {correct_type}"
        )
        if schedule is None:
            self.repair_subscription_type(wallet_address, correct_type)
        else:
            schedule(self.repair_subscription_type, wallet_address, correct_type)
        return correct_type

    def balance_snapshot(
        self,
        wallet_address: str,
        now: Optional[datetime] = None,
        schedule: Optional[RepairScheduler] = None
    ) -> Dict[str, Any]:
        """Full account status for a wallet, creating the account on first touch."""
        moment = utc_now(now)
        account = self.repository.ensure_account(wallet_address, isoformat(moment))
        tier = resolve_tier(account.tier)
        subscription_type = self.resolve_subscription_type(
            wallet_address, account.subscription_type, schedule
        )

        start, end = day_bounds(moment)
        check_in = self.check_ins.status(wallet_address, moment)
        quota = self.quota.snapshot(wallet_address, moment)

        return {
            "walletAddress": wallet_address,
            "memoBalance": account.balance,
            "currentTier": tier.level,
            "tierName": tier.name,
            "tierMultiplier": tier.multiplier,
            "totalMemoEarned": self.ledger.total_earned(wallet_address),
            "subscriptionType": subscription_type,
            "subscriptionExpiry": account.subscription_expiry,
            "dailyDialogueCount": self.repository.count_dialogues_between(wallet_address, start, end),
            "hasCheckedInToday": check_in.has_checked_in_today,
            "hasFirstChatToday": self.repository.has_first_chat_between(wallet_address, start, end),
            "consecutiveCheckInDays": check_in.consecutive_days,
            "weeklyCheckInProgress": check_in.weekly_progress,
            "totalCheckInDays": check_in.total_check_in_days,
            "aiDailyTokensUsed": quota.displayed_daily_used,
            "aiMonthlyTokensUsed": quota.monthly_used,
            "syncedAt": isoformat(moment),
        }
