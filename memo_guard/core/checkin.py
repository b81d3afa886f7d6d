"""
Daily check-in state machine.

One check-in per wallet per UTC day. The streak continues when the previous
check-in was yesterday and restarts at 1 otherwise; rewards follow a seven
day cycle.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from memo_guard.storage.db import DEFAULT_DB_PATH
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.models import CheckInRecord

from .calendar import isoformat, seconds_until_reset, utc_now, yesterday
from .errors import AlreadyCheckedIn
from .tiers import apply_multiplier, resolve_multiplier

logger = logging.getLogger(__name__)

# Base reward by position in the weekly cycle (day 1..7)
WEEKLY_REWARDS = (20, 20, 20, 50, 50, 50, 150)


def weekly_progress(consecutive_days: int) -> int:
    """Position of a streak day in the seven day cycle, 1..7."""
    return ((consecutive_days - 1) % 7) + 1


def base_reward(progress: int) -> int:
    return WEEKLY_REWARDS[progress - 1]


@dataclass(frozen=True)
class CheckInResult:
    check_in_date: str
    consecutive_days: int
    weekly_progress: int
    reward: int
    tier_multiplier: float
    new_balance: int
    seconds_until_reset: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "checkInDate": self.check_in_date,
            "consecutiveDays": self.consecutive_days,
            "weeklyProgress": self.weekly_progress,
            "reward": self.reward,
            "tierMultiplier": self.tier_multiplier,
            "newBalance": self.new_balance,
            "secondsUntilReset": self.seconds_until_reset,
        }


@dataclass(frozen=True)
class CheckInStatus:
    has_checked_in_today: bool
    consecutive_days: int
    weekly_progress: int
    total_check_in_days: int
    last_check_in_date: Optional[str]
    seconds_until_reset: int

    def to_dict(self) -> dict:
        return {
            "hasCheckedInToday": self.has_checked_in_today,
            "consecutiveDays": self.consecutive_days,
            "weeklyProgress": self.weekly_progress,
            "totalCheckInDays": self.total_check_in_days,
            "lastCheckInDate": self.last_check_in_date,
            "secondsUntilReset": self.seconds_until_reset,
            "resetTimeUTC": "00:00 UTC",
        }


class CheckInService:
    """Daily check-in with streak tracking."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.repository = LedgerRepository(db_path)

    def check_in(self, wallet_address: str, now: Optional[datetime] = None) -> CheckInResult:
        """Record today's check-in and credit its reward.

        Args:
            wallet_address: Identity checking in
            now: Clock override

        Returns:
            CheckInResult with the streak position and new balance

        Raises:
            AlreadyCheckedIn: If a record for today exists, including when a
                concurrent request inserted it first
        """
        moment = utc_now(now)
        today = moment.date()
        reset_in = seconds_until_reset(moment)

        if self.repository.get_check_in(wallet_address, today.isoformat()) is not None:
            logger.warning(f"Duplicate check-in for {wallet_address} on {today}")
            raise AlreadyCheckedIn(reset_in)

        prior = self.repository.latest_check_in(wallet_address, before_date=today.isoformat())
        if prior is not None and prior.check_in_date == yesterday(today).isoformat():
            consecutive = prior.consecutive_days + 1
        else:
            consecutive = 1

        progress = weekly_progress(consecutive)
        account = self.repository.get_account(wallet_address)
        multiplier = resolve_multiplier(account.tier if account else None)
        reward = apply_multiplier(base_reward(progress), multiplier)

        record = CheckInRecord(
            wallet_address=wallet_address,
            check_in_date=today.isoformat(),
            consecutive_days=consecutive,
            weekly_progress=progress,
            reward_amount=reward,
            tier_multiplier=multiplier,
            created_at=isoformat(moment)
        )
        result = self.repository.insert_check_in(
            record,
            description=f"Daily check-in day {progress}",
            reference_id=f"checkin_{today.isoformat()}"
        )
        if not result.inserted:
            logger.warning(f"Concurrent check-in for {wallet_address} on {today} lost the race")
            raise AlreadyCheckedIn(reset_in)

        logger.info(
            f"Check-in for {wallet_address}: streak {consecutive}, reward {reward}, "
            f"balance {result.new_balance}"
        )
        return CheckInResult(
            check_in_date=today.isoformat(),
            consecutive_days=consecutive,
            weekly_progress=progress,
            reward=reward,
            tier_multiplier=multiplier,
            new_balance=result.new_balance,
            seconds_until_reset=reset_in
        )

    def status(self, wallet_address: str, now: Optional[datetime] = None) -> CheckInStatus:
        """Today's check-in state for a wallet. Read-only."""
        moment = utc_now(now)
        today = moment.date()
        latest = self.repository.latest_check_in(wallet_address)

        checked_today = latest is not None and latest.check_in_date == today.isoformat()
        # a streak survives only while the last check-in is today or yesterday
        alive = latest is not None and latest.check_in_date in (
            today.isoformat(), yesterday(today).isoformat()
        )
        consecutive = latest.consecutive_days if alive else 0

        return CheckInStatus(
            has_checked_in_today=checked_today,
            consecutive_days=consecutive,
            weekly_progress=weekly_progress(consecutive) if consecutive else 0,
            total_check_in_days=self.repository.count_check_ins(wallet_address),
            last_check_in_date=latest.check_in_date if latest else None,
            seconds_until_reset=seconds_until_reset(moment)
        )
