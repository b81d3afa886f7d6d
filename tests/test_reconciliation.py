"""
Unit tests for the ledger service and reconciliation.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from memo_guard.core.checkin import CheckInService
from memo_guard.core.dialogue import DialogueRewardService
from memo_guard.core.errors import InvalidRequest
from memo_guard.core.ledger import LedgerService
from memo_guard.core.reconciliation import ReconciliationService
from memo_guard.storage.db import get_connection
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.migrations import apply_migrations
from memo_guard.storage.repository import UsageRepository

DAY = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


class _DatabaseTest:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        apply_migrations(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _execute(self, sql, params=()):
        conn = get_connection(self.db_path)
        try:
            conn.execute(sql, params)
        finally:
            conn.close()


class TestLedgerService(_DatabaseTest):
    """Test earnings, history paging and balance reconciliation."""

    def setup_method(self):
        super().setup_method()
        self.ledger = LedgerService(self.db_path)

    def test_record_earning_rejects_non_positive(self):
        with pytest.raises(InvalidRequest):
            self.ledger.record_earning("W", "CHECK_IN", 0, now=DAY)

    def test_reconcile_without_spend_is_zero(self):
        """Rewards keep the cache in step with the ledger."""
        CheckInService(self.db_path).check_in("W", now=DAY)
        DialogueRewardService(self.db_path).reward("W", is_first_chat=True, now=DAY)
        self.ledger.record_earning("W", "BONUS", 5, "manual", now=DAY)

        result = self.ledger.reconcile_balance("W", now=DAY)
        assert result.delta == 0
        assert result.new == 20 + 40 + 5

    def test_reconcile_repairs_and_is_idempotent(self):
        self.ledger.record_earning("W", "BONUS", 100, now=DAY)
        self._execute("UPDATE accounts SET balance = 40 WHERE wallet_address = 'W'")

        first = self.ledger.reconcile_balance("W", now=DAY)
        second = self.ledger.reconcile_balance("W", now=DAY)
        assert first.to_dict() == {"previousBalance": 40, "newBalance": 100, "delta": 60}
        assert second.delta == 0

    def test_reconcile_unknown_wallet(self):
        result = self.ledger.reconcile_balance("nobody", now=DAY)
        assert (result.previous, result.new, result.delta) == (0, 0, 0)

    def test_history_paging(self):
        for i in range(5):
            self.ledger.record_earning("W", "BONUS", i + 1, now=DAY + timedelta(minutes=i))

        page = self.ledger.get_history("W", limit=2, offset=1)
        assert page.total == 5
        assert [entry.amount for entry in page.entries] == [4, 3]
        assert page.to_dict()["transactions"][0]["walletAddress"] == "W"

    def test_history_limits_clamped(self):
        page = self.ledger.get_history("W", limit=1000, offset=-5)
        assert page.limit == 200
        assert page.offset == 0
        assert self.ledger.get_history("W", limit=0).limit == 1

    def test_total_earned(self):
        self.ledger.record_earning("W", "BONUS", 7, now=DAY)
        self.ledger.record_earning("W", "BONUS", 8, now=DAY)
        assert self.ledger.total_earned("W") == 15


class TestSubscriptionSelfHeal(_DatabaseTest):
    """Test read-path subscription correction."""

    def setup_method(self):
        super().setup_method()
        self.service = ReconciliationService(self.db_path)
        self.repo = LedgerRepository(self.db_path)
        self.repo.ensure_account("W", DAY.isoformat())

    def _add_subscription(self, plan_type, active=1):
        self._execute(
            "INSERT INTO subscriptions (wallet_address, plan_type, is_active, updated_at) "
            "VALUES ('W', ?, ?, ?)", (plan_type, active, DAY.isoformat())
        )

    def test_serves_authoritative_and_defers_repair(self):
        """Drift is served corrected at once; the cache repair is scheduled."""
        self._add_subscription(2)
        schedule = Mock()

        snapshot = self.service.balance_snapshot("W", now=DAY, schedule=schedule)

        assert snapshot["subscriptionType"] == "quarterly_continuous"
        assert self.repo.get_account("W").subscription_type == "FREE"
        schedule.assert_called_once_with(
            self.service.repair_subscription_type, "W", "quarterly_continuous"
        )

        repair, *args = schedule.call_args[0]
        repair(*args)
        assert self.repo.get_account("W").subscription_type == "quarterly_continuous"

    def test_inline_repair_without_scheduler(self):
        self._add_subscription(3)
        assert self.service.resolve_subscription_type("W", "FREE") == "yearly_continuous"
        assert self.repo.get_account("W").subscription_type == "yearly_continuous"

    def test_no_drift_no_repair(self):
        schedule = Mock()
        assert self.service.resolve_subscription_type("W", "FREE", schedule) == "FREE"
        schedule.assert_not_called()

    def test_inactive_subscription_ignored(self):
        self._add_subscription(1, active=0)
        schedule = Mock()
        assert self.service.resolve_subscription_type("W", "FREE", schedule) == "FREE"
        schedule.assert_not_called()

    def test_unknown_plan_type_ignored(self):
        self._add_subscription(9)
        assert self.service.resolve_subscription_type("W", "FREE") == "FREE"


class TestBalanceSnapshot(_DatabaseTest):
    """Test the full status snapshot."""

    def test_new_wallet_created_lazily(self):
        service = ReconciliationService(self.db_path)
        snapshot = service.balance_snapshot("fresh", now=DAY)

        assert snapshot["memoBalance"] == 0
        assert snapshot["currentTier"] == 1
        assert snapshot["tierName"] == "Bronze"
        assert snapshot["subscriptionType"] == "FREE"
        assert snapshot["hasCheckedInToday"] is False
        assert snapshot["syncedAt"] == "2026-03-10T09:30:00+00:00"
        assert LedgerRepository(self.db_path).get_account("fresh") is not None

    def test_snapshot_after_activity(self):
        CheckInService(self.db_path).check_in("W", now=DAY)
        DialogueRewardService(self.db_path).reward("W", is_first_chat=True, now=DAY)
        UsageRepository(self.db_path).increment_usage(
            "W", "2026-03-10", "202603", 7000, DAY.isoformat()
        )

        snapshot = ReconciliationService(self.db_path).balance_snapshot("W", now=DAY)
        assert snapshot["memoBalance"] == 60
        assert snapshot["totalMemoEarned"] == 60
        assert snapshot["dailyDialogueCount"] == 1
        assert snapshot["hasCheckedInToday"] is True
        assert snapshot["hasFirstChatToday"] is True
        assert snapshot["consecutiveCheckInDays"] == 1
        assert snapshot["weeklyCheckInProgress"] == 1
        assert snapshot["totalCheckInDays"] == 1
        assert snapshot["aiDailyTokensUsed"] == 6000
        assert snapshot["aiMonthlyTokensUsed"] == 7000
