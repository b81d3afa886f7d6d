"""
Ledger and balance cache service.

The ledger is the source of truth; ``accounts.balance`` is a cache of the sum
of its positive entries. Earnings always land in both within one transaction,
and ``reconcile_balance`` restores agreement when the cache has drifted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from memo_guard.storage.db import DEFAULT_DB_PATH
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.models import LedgerEntry

from .calendar import isoformat, utc_now
from .errors import InvalidRequest

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 200


@dataclass(frozen=True)
class BalanceSync:
    """Outcome of a balance reconciliation."""
    previous: int
    new: int

    @property
    def delta(self) -> int:
        return self.new - self.previous

    def to_dict(self) -> dict:
        return {
            "previousBalance": self.previous,
            "newBalance": self.new,
            "delta": self.delta,
        }


@dataclass(frozen=True)
class HistoryPage:
    entries: List[LedgerEntry]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict:
        return {
            "transactions": [entry.to_dict() for entry in self.entries],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


class LedgerService:
    """Append-only earnings ledger with a cached per-wallet balance."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.repository = LedgerRepository(db_path)

    def record_earning(
        self,
        wallet_address: str,
        entry_type: str,
        amount: int,
        description: str = "",
        reference_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> int:
        """Append an earning and credit the cached balance atomically.

        Args:
            wallet_address: Account to credit, created if missing
            entry_type: Ledger category, e.g. CHECK_IN
            amount: Points to credit, must be positive
            description: Human-readable description
            reference_id: Optional correlation id
            now: Clock override

        Returns:
            The balance after the credit

        Raises:
            InvalidRequest: If the amount is not positive
        """
        if amount <= 0:
            raise InvalidRequest(f"Earning amount must be positive, got {amount}", "invalid_amount")
        balance = self.repository.record_earning(
            wallet_address, entry_type, amount, description, reference_id,
            isoformat(utc_now(now))
        )
        logger.info(f"Credited {amount} ({entry_type}) to {wallet_address}, balance {balance}")
        return balance

    def reconcile_balance(self, wallet_address: str, now: Optional[datetime] = None) -> BalanceSync:
        """Recompute the cached balance from the ledger and overwrite it if it drifted.

        Running it twice in a row yields a zero delta the second time.
        """
        previous, new = self.repository.reconcile_balance(wallet_address, isoformat(utc_now(now)))
        result = BalanceSync(previous=previous, new=new)
        if result.delta:
            logger.info(f"Reconciled balance for {wallet_address}: {previous} -> {new}")
        return result

    def get_history(self, wallet_address: str, limit: int = 50, offset: int = 0) -> HistoryPage:
        """Newest-first page of ledger entries plus the total count.

        ``limit`` is clamped to 1..200 and ``offset`` to >= 0.
        """
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        offset = max(0, offset)
        entries, total = self.repository.fetch_history(wallet_address, limit, offset)
        return HistoryPage(entries=entries, total=total, limit=limit, offset=offset)

    def total_earned(self, wallet_address: str) -> int:
        return self.repository.sum_positive_earnings(wallet_address)
