"""
Repository for accounts, the MEMO ledger and reward records.

Every operation that credits points appends the ledger row and bumps the
cached ``accounts.balance`` inside the same transaction. Reward inserts that
have an idempotency boundary (check-in per day, adventure per quest) report a
uniqueness violation as ``InsertOutcome.ALREADY_EXISTS`` instead of raising.
"""

import sqlite3
import uuid
from typing import List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    Account,
    AdventureCompletion,
    CheckInRecord,
    DialogueRewardRecord,
    InsertOutcome,
    InsertResult,
    LedgerEntry,
)

_ACCOUNT_COLUMNS = """
    id, wallet_address, balance, tier, subscription_type,
    subscription_expiry, created_at, last_active_at
"""

_CHECK_IN_COLUMNS = """
    wallet_address, check_in_date, consecutive_days, weekly_progress,
    reward_amount, tier_multiplier, created_at
"""


def _is_unique_violation(error: sqlite3.IntegrityError, table: str) -> bool:
    message = str(error)
    return "UNIQUE constraint failed" in message and f"{table}." in message


def _row_to_account(row) -> Account:
    return Account(
        id=row[0],
        wallet_address=row[1],
        balance=row[2],
        tier=row[3],
        subscription_type=row[4],
        subscription_expiry=row[5],
        created_at=row[6],
        last_active_at=row[7]
    )


def _row_to_check_in(row) -> CheckInRecord:
    return CheckInRecord(
        wallet_address=row[0],
        check_in_date=row[1],
        consecutive_days=row[2],
        weekly_progress=row[3],
        reward_amount=row[4],
        tier_multiplier=row[5],
        created_at=row[6]
    )


def _upsert_account(conn: sqlite3.Connection, wallet_address: str, now: str) -> None:
    conn.execute("""
        INSERT INTO accounts
        (id, wallet_address, balance, tier, subscription_type,
         created_at, last_active_at, updated_at)
        VALUES (?, ?, 0, 1, 'FREE', ?, ?, ?)
        ON CONFLICT(wallet_address) DO NOTHING
    """, (f"user_{uuid.uuid4().hex}", wallet_address, now, now, now))


def _append_earning(
    conn: sqlite3.Connection,
    wallet_address: str,
    entry_type: str,
    amount: int,
    description: str,
    reference_id: Optional[str],
    now: str
) -> int:
    """Append a ledger row and bump the cached balance on an open transaction.

    Returns:
        The balance after the credit
    """
    _upsert_account(conn, wallet_address, now)
    conn.execute("""
        INSERT INTO ledger_entries
        (wallet_address, type, amount, description, reference_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (wallet_address, entry_type, amount, description, reference_id, now))
    conn.execute("""
        UPDATE accounts
        SET balance = balance + ?, last_active_at = ?, updated_at = ?
        WHERE wallet_address = ?
    """, (amount, now, now, wallet_address))
    row = conn.execute(
        "SELECT balance FROM accounts WHERE wallet_address = ?", (wallet_address,)
    ).fetchone()
    return row[0]


class LedgerRepository:
    """Repository for the MEMO ledger, cached balances and reward records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # ---- accounts ----

    def ensure_account(self, wallet_address: str, now: str) -> Account:
        """Return the account for a wallet, creating it on first touch."""
        with transaction(self.db_path) as conn:
            _upsert_account(conn, wallet_address, now)
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE wallet_address = ?",
                (wallet_address,)
            ).fetchone()
        return _row_to_account(row)

    def get_account(self, wallet_address: str) -> Optional[Account]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE wallet_address = ?",
                (wallet_address,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def set_tier(self, wallet_address: str, tier: int, now: str) -> None:
        with transaction(self.db_path) as conn:
            _upsert_account(conn, wallet_address, now)
            conn.execute(
                "UPDATE accounts SET tier = ?, updated_at = ? WHERE wallet_address = ?",
                (tier, now, wallet_address)
            )

    def set_subscription_type(self, wallet_address: str, subscription_type: str, now: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE accounts SET subscription_type = ?, updated_at = ? WHERE wallet_address = ?",
                (subscription_type, now, wallet_address)
            )

    def active_subscription_plan(self, wallet_address: str) -> Optional[int]:
        """Plan type of the wallet's active auto-renew subscription, if any."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT plan_type FROM subscriptions
                WHERE wallet_address = ? AND is_active = 1
                ORDER BY updated_at DESC, id DESC LIMIT 1
            """, (wallet_address,)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    # ---- ledger ----

    def record_earning(
        self,
        wallet_address: str,
        entry_type: str,
        amount: int,
        description: str,
        reference_id: Optional[str],
        now: str
    ) -> int:
        """Append a ledger entry and credit the cached balance atomically.

        Returns:
            The balance after the credit
        """
        with transaction(self.db_path) as conn:
            return _append_earning(
                conn, wallet_address, entry_type, amount, description, reference_id, now
            )

    def fetch_history(
        self,
        wallet_address: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[LedgerEntry], int]:
        """Get a page of ledger entries, newest first, with the total count."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, wallet_address, type, amount, description,
                       reference_id, created_at
                FROM ledger_entries
                WHERE wallet_address = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
            """, (wallet_address, limit, offset))
            entries = [
                LedgerEntry(
                    id=row[0],
                    wallet_address=row[1],
                    type=row[2],
                    amount=row[3],
                    description=row[4],
                    reference_id=row[5],
                    created_at=row[6]
                )
                for row in cursor.fetchall()
            ]
            total = conn.execute(
                "SELECT COUNT(*) FROM ledger_entries WHERE wallet_address = ?",
                (wallet_address,)
            ).fetchone()[0]
            return entries, total
        finally:
            conn.close()

    def sum_positive_earnings(self, wallet_address: str) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT COALESCE(SUM(amount), 0) FROM ledger_entries
                WHERE wallet_address = ? AND amount > 0
            """, (wallet_address,)).fetchone()
            return row[0]
        finally:
            conn.close()

    def reconcile_balance(self, wallet_address: str, now: str) -> Tuple[int, int]:
        """Recompute the cached balance from the ledger.

        The sum, the cached value and the overwrite are read and written under
        one write lock, so concurrent credits cannot slip in between.

        Returns:
            Tuple of (previous_balance, new_balance)
        """
        with transaction(self.db_path) as conn:
            earned = conn.execute("""
                SELECT COALESCE(SUM(amount), 0) FROM ledger_entries
                WHERE wallet_address = ? AND amount > 0
            """, (wallet_address,)).fetchone()[0]
            row = conn.execute(
                "SELECT balance FROM accounts WHERE wallet_address = ?", (wallet_address,)
            ).fetchone()
            previous = row[0] if row else 0
            if row is not None and earned != previous:
                conn.execute("""
                    UPDATE accounts SET balance = ?, last_active_at = ?, updated_at = ?
                    WHERE wallet_address = ?
                """, (earned, now, now, wallet_address))
            return previous, earned if row is not None else previous

    # ---- check-ins ----

    def get_check_in(self, wallet_address: str, check_in_date: str) -> Optional[CheckInRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_CHECK_IN_COLUMNS} FROM check_ins "
                "WHERE wallet_address = ? AND check_in_date = ?",
                (wallet_address, check_in_date)
            ).fetchone()
            return _row_to_check_in(row) if row else None
        finally:
            conn.close()

    def latest_check_in(
        self,
        wallet_address: str,
        before_date: Optional[str] = None
    ) -> Optional[CheckInRecord]:
        """Most recent check-in, optionally strictly before a given day."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_CHECK_IN_COLUMNS} FROM check_ins WHERE wallet_address = ?"
            params = [wallet_address]
            if before_date is not None:
                query += " AND check_in_date < ?"
                params.append(before_date)
            query += " ORDER BY check_in_date DESC LIMIT 1"
            row = conn.execute(query, params).fetchone()
            return _row_to_check_in(row) if row else None
        finally:
            conn.close()

    def count_check_ins(self, wallet_address: str) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM check_ins WHERE wallet_address = ?", (wallet_address,)
            ).fetchone()[0]
        finally:
            conn.close()

    def insert_check_in(
        self,
        record: CheckInRecord,
        description: str,
        reference_id: str
    ) -> InsertResult:
        """Insert a check-in and credit its reward in one transaction.

        A duplicate (wallet, day) is reported as ALREADY_EXISTS and leaves no
        trace: no record, no ledger entry, no balance change.
        """
        try:
            with transaction(self.db_path) as conn:
                conn.execute(f"""
                    INSERT INTO check_ins ({_CHECK_IN_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.wallet_address,
                    record.check_in_date,
                    record.consecutive_days,
                    record.weekly_progress,
                    record.reward_amount,
                    record.tier_multiplier,
                    record.created_at
                ))
                balance = _append_earning(
                    conn, record.wallet_address, "CHECK_IN", record.reward_amount,
                    description, reference_id, record.created_at
                )
        except sqlite3.IntegrityError as e:
            if _is_unique_violation(e, "check_ins"):
                return InsertResult(InsertOutcome.ALREADY_EXISTS)
            raise
        return InsertResult(InsertOutcome.INSERTED, new_balance=balance)

    # ---- adventures ----

    def insert_adventure(
        self,
        completion: AdventureCompletion,
        description: str,
        reference_id: str
    ) -> InsertResult:
        """Insert a quest completion and credit its reward in one transaction."""
        try:
            with transaction(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO adventure_completions
                    (wallet_address, quest_id, quest_text, reward_amount,
                     tier_multiplier, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    completion.wallet_address,
                    completion.quest_id,
                    completion.quest_text,
                    completion.reward_amount,
                    completion.tier_multiplier,
                    completion.completed_at
                ))
                balance = _append_earning(
                    conn, completion.wallet_address, "ADVENTURE", completion.reward_amount,
                    description, reference_id, completion.completed_at
                )
        except sqlite3.IntegrityError as e:
            if _is_unique_violation(e, "adventure_completions"):
                return InsertResult(InsertOutcome.ALREADY_EXISTS)
            raise
        return InsertResult(InsertOutcome.INSERTED, new_balance=balance)

    # ---- dialogue rewards ----

    def count_dialogues_between(self, wallet_address: str, start: str, end: str) -> int:
        """Count dialogue rewards with start <= created_at < end."""
        conn = get_connection(self.db_path)
        try:
            return conn.execute("""
                SELECT COUNT(*) FROM dialogue_rewards
                WHERE wallet_address = ? AND created_at >= ? AND created_at < ?
            """, (wallet_address, start, end)).fetchone()[0]
        finally:
            conn.close()

    def has_first_chat_between(self, wallet_address: str, start: str, end: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT 1 FROM dialogue_rewards
                WHERE wallet_address = ? AND created_at >= ? AND created_at < ?
                  AND is_first_chat = 1
                LIMIT 1
            """, (wallet_address, start, end)).fetchone()
            return row is not None
        finally:
            conn.close()

    def insert_dialogue_reward(
        self,
        record: DialogueRewardRecord,
        description: str,
        reference_id: str
    ) -> int:
        """Insert a dialogue reward and credit it in one transaction.

        There is no uniqueness constraint on dialogue rewards, so every call
        credits.

        Returns:
            The balance after the credit
        """
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO dialogue_rewards
                (wallet_address, session_id, dialogue_index, base_reward,
                 first_chat_bonus, resonance_bonus, resonance_grade,
                 tier_multiplier, final_reward, is_first_chat, is_over_limit,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.wallet_address,
                record.session_id,
                record.dialogue_index,
                record.base_reward,
                record.first_chat_bonus,
                record.resonance_bonus,
                record.resonance_grade,
                record.tier_multiplier,
                record.final_reward,
                int(record.is_first_chat),
                int(record.is_over_limit),
                record.created_at
            ))
            return _append_earning(
                conn, record.wallet_address, "DIALOGUE", record.final_reward,
                description, reference_id, record.created_at
            )
