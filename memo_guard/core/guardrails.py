"""
Token quota guardrails.

Bounds AI token consumption in two UTC-aligned windows.

Enforcement Order:
1. Monthly hard gate - the window is already exhausted
2. Daily gate - only when daily enforcement is enabled
3. Pre-flight estimate - the request would push the month over its limit
4. Post-call check - actual usage pushed the month over its limit
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from memo_guard.config.loader import QuotaConfig
from memo_guard.storage.db import DEFAULT_DB_PATH
from memo_guard.storage.repository import UsageRepository

from .calendar import isoformat, stat_date, stat_month, utc_now
from .errors import MemoGuardError

logger = logging.getLogger(__name__)

MONTHLY_QUOTA_EXCEEDED = "monthly_quota_exceeded"
MONTHLY_QUOTA_WOULD_EXCEED = "monthly_quota_would_exceed"
DAILY_QUOTA_EXCEEDED = "daily_quota_exceeded"


@dataclass(frozen=True)
class QuotaSnapshot:
    """Usage of one wallet in the current daily and monthly windows."""
    daily_used: int
    daily_limit: int
    monthly_used: int
    monthly_limit: int
    stat_date: str
    stat_month: str

    @property
    def displayed_daily_used(self) -> int:
        """Daily usage capped at the daily limit; the monthly value is never capped."""
        return min(self.daily_used, self.daily_limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailyUsed": self.displayed_daily_used,
            "dailyLimit": self.daily_limit,
            "monthlyUsed": self.monthly_used,
            "monthlyLimit": self.monthly_limit,
            "statDate": self.stat_date,
            "statMonth": self.stat_month,
        }


class QuotaViolation(MemoGuardError):
    """Raised when a request is rejected by a quota window."""
    status_code = 429

    def __init__(
        self,
        code: str,
        snapshot: QuotaSnapshot,
        estimated_tokens: Optional[int] = None
    ):
        super().__init__(
            f"{code}: monthly {snapshot.monthly_used}/{snapshot.monthly_limit}", code
        )
        self.snapshot = snapshot
        self.estimated_tokens = estimated_tokens

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "error": self.code,
            "monthlyUsed": self.snapshot.monthly_used,
            "monthlyLimit": self.snapshot.monthly_limit,
        }
        if self.code == DAILY_QUOTA_EXCEEDED:
            payload["dailyUsed"] = self.snapshot.displayed_daily_used
            payload["dailyLimit"] = self.snapshot.daily_limit
        if self.estimated_tokens is not None:
            payload["estimatedTokens"] = self.estimated_tokens
        return payload


def enforce_preflight(
    snapshot: QuotaSnapshot,
    estimated_tokens: int,
    enforce_daily: bool = False
) -> None:
    """Reject a request before any upstream call is made.

    Args:
        snapshot: Current window usage
        estimated_tokens: Prompt estimate plus the completion-token cap
        enforce_daily: Whether the daily window also blocks

    Raises:
        QuotaViolation: If any gate rejects the request
    """
    if snapshot.monthly_used >= snapshot.monthly_limit:
        raise QuotaViolation(MONTHLY_QUOTA_EXCEEDED, snapshot)
    if enforce_daily and snapshot.daily_used >= snapshot.daily_limit:
        raise QuotaViolation(DAILY_QUOTA_EXCEEDED, snapshot)
    if snapshot.monthly_used + estimated_tokens > snapshot.monthly_limit:
        raise QuotaViolation(MONTHLY_QUOTA_WOULD_EXCEED, snapshot, estimated_tokens)


def enforce_post_call(snapshot: QuotaSnapshot, used_tokens: int) -> None:
    """Reject a completed call whose actual usage overran the month.

    The tokens were already consumed upstream; the caller still records them.

    Raises:
        QuotaViolation: If monthly_used + used_tokens exceeds the limit
    """
    if snapshot.monthly_used + used_tokens > snapshot.monthly_limit:
        raise QuotaViolation(MONTHLY_QUOTA_EXCEEDED, snapshot)


class QuotaGate:
    """Reads and updates a wallet's token windows."""

    def __init__(self, config: QuotaConfig, db_path: str = DEFAULT_DB_PATH):
        self.config = config
        self.repository = UsageRepository(db_path)

    def snapshot(self, wallet_address: str, now: Optional[datetime] = None) -> QuotaSnapshot:
        """Current usage; wallets with no usage report zeros. Read-only."""
        moment = utc_now(now)
        day = stat_date(moment)
        month = stat_month(moment)
        return QuotaSnapshot(
            daily_used=self.repository.get_daily_used(wallet_address, day),
            daily_limit=self.config.daily_tokens,
            monthly_used=self.repository.get_monthly_used(wallet_address, month),
            monthly_limit=self.config.monthly_tokens,
            stat_date=day,
            stat_month=month
        )

    def check(self, snapshot: QuotaSnapshot, estimated_tokens: int) -> None:
        try:
            enforce_preflight(snapshot, estimated_tokens, self.config.enforce_daily)
        except QuotaViolation as e:
            logger.warning(f"Quota rejection before upstream call: {e.message}")
            raise

    def record_usage(self, wallet_address: str, tokens: int, now: Optional[datetime] = None) -> None:
        """Merge-increment both windows at the store."""
        if tokens <= 0:
            return
        moment = utc_now(now)
        self.repository.increment_usage(
            wallet_address, stat_date(moment), stat_month(moment), tokens, isoformat(moment)
        )
