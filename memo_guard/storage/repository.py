"""
Repository pattern for AI usage data.

Handles the daily/monthly token counters, the append-only usage audit log and
the encrypted upstream API key rows.
"""

from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import StoredApiKey, UsageAuditEntry


class UsageRepository:
    """Repository for token counters, usage audit rows and stored API keys.

    Counters are only ever written with a merge-increment upsert, so two
    concurrent writers for the same window both land.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def increment_usage(
        self,
        wallet_address: str,
        stat_date: str,
        stat_month: str,
        tokens: int,
        now: str
    ) -> None:
        """Add tokens to the daily and monthly counters in one transaction.

        Args:
            wallet_address: Identity the tokens are charged to
            stat_date: UTC day, YYYY-MM-DD
            stat_month: UTC month, YYYYMM
            tokens: Tokens consumed by the upstream call
            now: Timestamp written to ``updated_at``
        """
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO usage_daily (wallet_address, stat_date, tokens_used, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(wallet_address, stat_date) DO UPDATE SET
                    tokens_used = tokens_used + excluded.tokens_used,
                    updated_at = excluded.updated_at
            """, (wallet_address, stat_date, tokens, now))
            conn.execute("""
                INSERT INTO usage_monthly (wallet_address, stat_month, tokens_used, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(wallet_address, stat_month) DO UPDATE SET
                    tokens_used = tokens_used + excluded.tokens_used,
                    updated_at = excluded.updated_at
            """, (wallet_address, stat_month, tokens, now))

    def get_daily_used(self, wallet_address: str, stat_date: str) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT tokens_used FROM usage_daily WHERE wallet_address = ? AND stat_date = ?",
                (wallet_address, stat_date)
            ).fetchone()
            return row[0] if row else 0
        finally:
            conn.close()

    def get_monthly_used(self, wallet_address: str, stat_month: str) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT tokens_used FROM usage_monthly WHERE wallet_address = ? AND stat_month = ?",
                (wallet_address, stat_month)
            ).fetchone()
            return row[0] if row else 0
        finally:
            conn.close()

    def insert_audit_entry(self, entry: UsageAuditEntry) -> None:
        """Insert a single usage record into the append-only audit log.

        Args:
            entry: The upstream call to record
        """
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO ai_usage_logs
                (wallet_address, model, function_type, prompt_tokens,
                 completion_tokens, total_tokens, latency_ms, success,
                 error_message, request_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.wallet_address,
                entry.model,
                entry.function_type,
                entry.prompt_tokens,
                entry.completion_tokens,
                entry.total_tokens,
                entry.latency_ms,
                int(entry.success),
                entry.error_message[:500] if entry.error_message else None,
                entry.request_id,
                entry.created_at
            ))

    def fetch_audit_entries(
        self,
        wallet_address: Optional[str] = None,
        limit: int = 100
    ) -> List[UsageAuditEntry]:
        """Fetch recent audit rows, newest first, optionally for one wallet."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT wallet_address, model, function_type, prompt_tokens,
                       completion_tokens, total_tokens, latency_ms, success,
                       created_at, error_message, request_id
                FROM ai_usage_logs
            """
            params = []
            if wallet_address:
                query += " WHERE wallet_address = ?"
                params.append(wallet_address)
            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            params.append(limit)

            entries = []
            for row in conn.execute(query, params).fetchall():
                entries.append(UsageAuditEntry(
                    wallet_address=row[0],
                    model=row[1],
                    function_type=row[2],
                    prompt_tokens=row[3],
                    completion_tokens=row[4],
                    total_tokens=row[5],
                    latency_ms=row[6],
                    success=bool(row[7]),
                    created_at=row[8],
                    error_message=row[9],
                    request_id=row[10]
                ))
            return entries
        finally:
            conn.close()

    def add_api_key(
        self,
        service: str,
        encrypted_key: str,
        now: str,
        name: str = "",
        endpoint_url: Optional[str] = None
    ) -> None:
        """Store an encrypted key as the active primary key for a service.

        Any previous primary key for the service is demoted in the same
        transaction.
        """
        with transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE api_keys SET is_primary = 0, updated_at = ? WHERE service = ?",
                (now, service)
            )
            conn.execute("""
                INSERT INTO api_keys
                (service, name, encrypted_key, endpoint_url, is_active,
                 is_primary, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, 1, ?, ?)
            """, (service, name, encrypted_key, endpoint_url, now, now))

    def get_active_api_key(self, service: str) -> Optional[StoredApiKey]:
        """Active key for a service, primary first, then newest."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT service, name, encrypted_key, endpoint_url
                FROM api_keys
                WHERE service = ? AND is_active = 1
                ORDER BY is_primary DESC, created_at DESC, id DESC
                LIMIT 1
            """, (service,)).fetchone()
            if row is None:
                return None
            return StoredApiKey(
                service=row[0],
                name=row[1],
                encrypted_key=row[2],
                endpoint_url=row[3]
            )
        finally:
            conn.close()
