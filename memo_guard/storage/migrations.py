"""
Versioned schema migrations.

The whole schema is created here, once, when the service or CLI starts.
Request handlers never create tables. Each migration runs inside its own
transaction and is recorded in ``schema_migrations`` so re-running is a no-op.
"""

import logging
from datetime import datetime, timezone
from typing import List, Tuple

from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)


V0001_CORE = """
CREATE TABLE accounts (
    id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL UNIQUE,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    tier INTEGER NOT NULL DEFAULT 1,
    subscription_type TEXT NOT NULL DEFAULT 'FREE',
    subscription_expiry TEXT,
    created_at TEXT NOT NULL,
    last_active_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE ledger_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    reference_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX idx_ledger_wallet_created ON ledger_entries(wallet_address, created_at);

CREATE TABLE check_ins (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    check_in_date TEXT NOT NULL,
    consecutive_days INTEGER NOT NULL,
    weekly_progress INTEGER NOT NULL CHECK (weekly_progress BETWEEN 1 AND 7),
    reward_amount INTEGER NOT NULL,
    tier_multiplier REAL NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (wallet_address, check_in_date)
);

CREATE TABLE adventure_completions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    quest_id TEXT NOT NULL,
    quest_text TEXT NOT NULL DEFAULT '',
    reward_amount INTEGER NOT NULL,
    tier_multiplier REAL NOT NULL,
    completed_at TEXT NOT NULL,
    UNIQUE (wallet_address, quest_id)
);

CREATE TABLE dialogue_rewards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    session_id TEXT NOT NULL DEFAULT '',
    dialogue_index INTEGER NOT NULL,
    base_reward INTEGER NOT NULL,
    first_chat_bonus INTEGER NOT NULL,
    resonance_bonus INTEGER NOT NULL,
    resonance_grade TEXT NOT NULL DEFAULT 'B',
    tier_multiplier REAL NOT NULL,
    final_reward INTEGER NOT NULL,
    is_first_chat INTEGER NOT NULL DEFAULT 0,
    is_over_limit INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX idx_dialogue_wallet_created ON dialogue_rewards(wallet_address, created_at);
"""

V0002_USAGE = """
CREATE TABLE usage_daily (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    stat_date TEXT NOT NULL,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    UNIQUE (wallet_address, stat_date)
);

CREATE TABLE usage_monthly (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    stat_month TEXT NOT NULL,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    UNIQUE (wallet_address, stat_month)
);

CREATE TABLE ai_usage_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    model TEXT NOT NULL,
    function_type TEXT NOT NULL,
    prompt_tokens INTEGER NOT NULL,
    completion_tokens INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    latency_ms INTEGER NOT NULL,
    success INTEGER NOT NULL,
    error_message TEXT,
    request_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX idx_ai_usage_wallet_created ON ai_usage_logs(wallet_address, created_at);

CREATE TABLE api_keys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    encrypted_key TEXT NOT NULL,
    endpoint_url TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_primary INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

V0003_SUBSCRIPTIONS = """
CREATE TABLE subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_address TEXT NOT NULL,
    plan_type INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL
);
CREATE INDEX idx_subscriptions_wallet_active ON subscriptions(wallet_address, is_active);
"""

MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "core_ledger_and_rewards", V0001_CORE),
    (2, "usage_counters_and_audit", V0002_USAGE),
    (3, "subscriptions", V0003_SUBSCRIPTIONS),
]


def _ensure_version_table(conn) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
    """)


def current_version(db_path: str = DEFAULT_DB_PATH) -> int:
    """Return the highest applied migration version (0 for a fresh database)."""
    conn = get_connection(db_path)
    try:
        _ensure_version_table(conn)
        row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return row[0] or 0
    finally:
        conn.close()


def apply_migrations(db_path: str = DEFAULT_DB_PATH) -> List[int]:
    """Apply every pending migration in order.

    Each migration's DDL and its version stamp are written in one
    transaction, so a failed migration leaves no partial schema behind.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Versions applied by this call (empty when already up to date)
    """
    conn = get_connection(db_path)
    applied = []
    try:
        _ensure_version_table(conn)
        done = {row[0] for row in conn.execute("SELECT version FROM schema_migrations")}
        for version, name, ddl in MIGRATIONS:
            if version in done:
                continue
            conn.execute("BEGIN IMMEDIATE")
            try:
                # another process may have applied it while we waited for the lock
                raced = conn.execute(
                    "SELECT 1 FROM schema_migrations WHERE version = ?", (version,)
                ).fetchone()
                if raced:
                    conn.execute("COMMIT")
                    continue
                for statement in ddl.split(";"):
                    if statement.strip():
                        conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (version, name, datetime.now(timezone.utc).isoformat(timespec="seconds"))
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            logger.info(f"Applied migration {version:04d}_{name} to {db_path}")
            applied.append(version)
        return applied
    finally:
        conn.close()
