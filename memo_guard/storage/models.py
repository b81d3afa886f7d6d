"""
Data models for storage layer.

Defines database entities and the tagged result of idempotent inserts.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Account:
    """Per-wallet account row. ``balance`` caches the ledger sum."""
    id: str
    wallet_address: str
    balance: int
    tier: int
    subscription_type: str
    subscription_expiry: Optional[str]
    created_at: str
    last_active_at: str


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable earning record.

    Append-only: once written, ledger rows are never updated or deleted.
    """
    wallet_address: str
    type: str
    amount: int
    description: str
    reference_id: Optional[str]
    created_at: str
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "type": self.type,
            "amount": self.amount,
            "description": self.description,
            "referenceId": self.reference_id,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class CheckInRecord:
    wallet_address: str
    check_in_date: str
    consecutive_days: int
    weekly_progress: int
    reward_amount: int
    tier_multiplier: float
    created_at: str


@dataclass(frozen=True)
class AdventureCompletion:
    wallet_address: str
    quest_id: str
    quest_text: str
    reward_amount: int
    tier_multiplier: float
    completed_at: str


@dataclass(frozen=True)
class DialogueRewardRecord:
    wallet_address: str
    session_id: str
    dialogue_index: int
    base_reward: int
    first_chat_bonus: int
    resonance_bonus: int
    resonance_grade: str
    tier_multiplier: float
    final_reward: int
    is_first_chat: bool
    is_over_limit: bool
    created_at: str


@dataclass(frozen=True)
class UsageAuditEntry:
    """Write-once record of one upstream AI call, successful or not."""
    wallet_address: str
    model: str
    function_type: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: int
    success: bool
    created_at: str
    error_message: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class StoredApiKey:
    service: str
    name: str
    encrypted_key: str
    endpoint_url: Optional[str]


class InsertOutcome(Enum):
    """Outcome of an insert guarded by a uniqueness constraint."""
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class InsertResult:
    """Tagged result of an idempotent reward insert.

    ``new_balance`` is only set when the row was inserted and the earning
    was credited in the same transaction.
    """
    outcome: InsertOutcome
    new_balance: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.outcome is InsertOutcome.INSERTED
