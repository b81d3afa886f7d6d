"""
Unit tests for storage layer.

Tests migrations, the ledger repository and the usage repository.
"""

import os
import shutil
import sqlite3
import tempfile
import threading

import pytest

from memo_guard.storage.db import get_connection, transaction
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.migrations import MIGRATIONS, apply_migrations, current_version
from memo_guard.storage.models import (
    AdventureCompletion,
    CheckInRecord,
    InsertOutcome,
    UsageAuditEntry,
)
from memo_guard.storage.repository import UsageRepository

NOW = "2026-03-10T12:00:00+00:00"


def _check_in(wallet: str = "W", day: str = "2026-03-10", reward: int = 20) -> CheckInRecord:
    return CheckInRecord(
        wallet_address=wallet,
        check_in_date=day,
        consecutive_days=1,
        weekly_progress=1,
        reward_amount=reward,
        tier_multiplier=1.0,
        created_at=NOW
    )


class TestMigrations:
    """Test versioned schema migrations."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_fresh_database_applies_all(self):
        """All migrations apply in order on a fresh database."""
        assert current_version(self.db_path) == 0
        applied = apply_migrations(self.db_path)
        assert applied == [version for version, _, _ in MIGRATIONS]
        assert current_version(self.db_path) == MIGRATIONS[-1][0]

    def test_rerun_is_noop(self):
        """Running migrations twice applies nothing the second time."""
        apply_migrations(self.db_path)
        assert apply_migrations(self.db_path) == []

    def test_tables_created(self):
        """Every table exists after migration."""
        apply_migrations(self.db_path)
        conn = get_connection(self.db_path)
        try:
            names = {row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )}
        finally:
            conn.close()
        for table in ("accounts", "ledger_entries", "check_ins", "adventure_completions",
                      "dialogue_rewards", "usage_daily", "usage_monthly", "ai_usage_logs",
                      "api_keys", "subscriptions", "schema_migrations"):
            assert table in names


class TestTransaction:
    """Test the transaction helper."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        apply_migrations(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_rollback_on_error(self):
        """An exception inside the block leaves no partial writes."""
        with pytest.raises(RuntimeError):
            with transaction(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO ledger_entries (wallet_address, type, amount, created_at) "
                    "VALUES ('W', 'CHECK_IN', 20, ?)", (NOW,)
                )
                raise RuntimeError("boom")

        entries, total = LedgerRepository(self.db_path).fetch_history("W")
        assert entries == []
        assert total == 0


class TestLedgerRepository:
    """Test accounts, ledger entries and reward inserts."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        apply_migrations(self.db_path)
        self.repo = LedgerRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_ensure_account_is_idempotent(self):
        """Touching an account twice creates one row with defaults."""
        first = self.repo.ensure_account("W", NOW)
        second = self.repo.ensure_account("W", NOW)
        assert first.id == second.id
        assert first.id.startswith("user_")
        assert first.balance == 0
        assert first.tier == 1
        assert first.subscription_type == "FREE"

    def test_get_account_missing(self):
        assert self.repo.get_account("nobody") is None

    def test_record_earning_updates_balance(self):
        """Ledger row and cached balance are written together."""
        assert self.repo.record_earning("W", "CHECK_IN", 20, "day 1", "checkin_x", NOW) == 20
        assert self.repo.record_earning("W", "ADVENTURE", 150, "quest", "adventure_q", NOW) == 170

        entries, total = self.repo.fetch_history("W")
        assert total == 2
        assert [e.amount for e in entries] == [150, 20]
        assert self.repo.get_account("W").balance == 170

    def test_duplicate_check_in_is_tagged(self):
        """A second insert for the same day reports ALREADY_EXISTS and credits nothing."""
        first = self.repo.insert_check_in(_check_in(), "Daily check-in", "checkin_2026-03-10")
        second = self.repo.insert_check_in(_check_in(), "Daily check-in", "checkin_2026-03-10")

        assert first.outcome is InsertOutcome.INSERTED
        assert first.new_balance == 20
        assert second.outcome is InsertOutcome.ALREADY_EXISTS
        assert second.new_balance is None
        assert self.repo.count_check_ins("W") == 1
        assert self.repo.fetch_history("W")[1] == 1
        assert self.repo.get_account("W").balance == 20

    def test_concurrent_check_ins_resolve_to_one(self):
        """Racing inserts for the same day produce exactly one record."""
        results = []

        def attempt():
            results.append(self.repo.insert_check_in(_check_in(), "Daily check-in", "checkin_x"))

        threads = [threading.Thread(target=attempt) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        inserted = [r for r in results if r.inserted]
        assert len(results) == 5
        assert len(inserted) == 1
        assert self.repo.count_check_ins("W") == 1
        assert self.repo.get_account("W").balance == 20

    def test_duplicate_adventure_is_tagged(self):
        completion = AdventureCompletion(
            wallet_address="W",
            quest_id="q1",
            quest_text="Find the lighthouse",
            reward_amount=150,
            tier_multiplier=1.0,
            completed_at=NOW
        )
        assert self.repo.insert_adventure(completion, "Adventure", "adventure_q1").inserted
        result = self.repo.insert_adventure(completion, "Adventure", "adventure_q1")
        assert result.outcome is InsertOutcome.ALREADY_EXISTS
        assert self.repo.get_account("W").balance == 150

    def test_latest_check_in_before_date(self):
        self.repo.insert_check_in(_check_in(day="2026-03-08"), "c", "checkin_2026-03-08")
        self.repo.insert_check_in(_check_in(day="2026-03-10"), "c", "checkin_2026-03-10")

        assert self.repo.latest_check_in("W").check_in_date == "2026-03-10"
        assert self.repo.latest_check_in("W", before_date="2026-03-10").check_in_date == "2026-03-08"
        assert self.repo.latest_check_in("W", before_date="2026-03-08") is None

    def test_reconcile_repairs_drift(self):
        """A drifted cache is overwritten with the ledger sum."""
        self.repo.record_earning("W", "CHECK_IN", 20, "", None, NOW)
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE accounts SET balance = 999 WHERE wallet_address = 'W'")
        finally:
            conn.close()

        assert self.repo.reconcile_balance("W", NOW) == (999, 20)
        assert self.repo.reconcile_balance("W", NOW) == (20, 20)

    def test_negative_balance_rejected(self):
        """The store refuses a negative cached balance."""
        self.repo.ensure_account("W", NOW)
        conn = get_connection(self.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE accounts SET balance = -1 WHERE wallet_address = 'W'")
        finally:
            conn.close()

    def test_active_subscription_plan(self):
        assert self.repo.active_subscription_plan("W") is None
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO subscriptions (wallet_address, plan_type, is_active, updated_at) "
                "VALUES ('W', 2, 1, ?)", (NOW,)
            )
        finally:
            conn.close()
        assert self.repo.active_subscription_plan("W") == 2


class TestUsageRepository:
    """Test token counters, audit rows and API keys."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        apply_migrations(self.db_path)
        self.repo = UsageRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_counters_merge_increment(self):
        """Two successive increments add up in both windows."""
        self.repo.increment_usage("W", "2026-03-10", "202603", 100, NOW)
        self.repo.increment_usage("W", "2026-03-10", "202603", 250, NOW)
        self.repo.increment_usage("W", "2026-03-11", "202603", 50, NOW)

        assert self.repo.get_daily_used("W", "2026-03-10") == 350
        assert self.repo.get_daily_used("W", "2026-03-11") == 50
        assert self.repo.get_monthly_used("W", "202603") == 400

    def test_counters_default_to_zero(self):
        assert self.repo.get_daily_used("W", "2026-03-10") == 0
        assert self.repo.get_monthly_used("W", "202603") == 0

    def test_concurrent_increments_are_not_lost(self):
        threads = [
            threading.Thread(target=self.repo.increment_usage, args=("W", "2026-03-10", "202603", 10, NOW))
            for _ in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert self.repo.get_monthly_used("W", "202603") == 100

    def test_audit_entry_truncates_error(self):
        self.repo.insert_audit_entry(UsageAuditEntry(
            wallet_address="W",
            model="qwen-flash",
            function_type="conversation",
            prompt_tokens=0,
            completion_tokens=0,
            total_tokens=0,
            latency_ms=12,
            success=False,
            created_at=NOW,
            error_message="x" * 800
        ))
        entries = self.repo.fetch_audit_entries("W")
        assert len(entries) == 1
        assert entries[0].success is False
        assert len(entries[0].error_message) == 500

    def test_primary_key_replaces_previous(self):
        """The newest added key is the active primary."""
        self.repo.add_api_key("qwen", "v1:old", NOW, name="old")
        self.repo.add_api_key("qwen", "v1:new", NOW, name="new", endpoint_url="https://example.test/v1")

        key = self.repo.get_active_api_key("qwen")
        assert key.encrypted_key == "v1:new"
        assert key.endpoint_url == "https://example.test/v1"
        assert self.repo.get_active_api_key("other") is None
