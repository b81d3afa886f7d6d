"""
One-shot adventure (quest) completion gate.

Each wallet can be credited for a given quest at most once. The uniqueness
constraint on (wallet, quest) is the race detector.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from memo_guard.storage.db import DEFAULT_DB_PATH
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.models import AdventureCompletion

from .calendar import isoformat, utc_now
from .errors import AlreadyCompleted, InvalidRequest
from .tiers import apply_multiplier, resolve_multiplier

logger = logging.getLogger(__name__)

ADVENTURE_BASE_REWARD = 150
DESCRIPTION_PREVIEW_CHARS = 30


@dataclass(frozen=True)
class AdventureResult:
    quest_id: str
    reward: int
    tier_multiplier: float
    new_balance: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "questId": self.quest_id,
            "reward": self.reward,
            "tierMultiplier": self.tier_multiplier,
            "newBalance": self.new_balance,
        }


class AdventureService:

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.repository = LedgerRepository(db_path)

    def complete(
        self,
        wallet_address: str,
        quest_id: Optional[str],
        quest_text: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AdventureResult:
        """Credit a quest completion exactly once.

        Args:
            wallet_address: Identity completing the quest
            quest_id: Quest identifier, required
            quest_text: Optional quest text, previewed in the ledger description
            now: Clock override

        Raises:
            InvalidRequest: If quest_id is missing or blank
            AlreadyCompleted: If the quest was already credited to this wallet
        """
        if not quest_id or not quest_id.strip():
            raise InvalidRequest("questId is required", "quest_id_required")

        moment = utc_now(now)
        text = quest_text or ""
        account = self.repository.get_account(wallet_address)
        multiplier = resolve_multiplier(account.tier if account else None)
        reward = apply_multiplier(ADVENTURE_BASE_REWARD, multiplier)

        completion = AdventureCompletion(
            wallet_address=wallet_address,
            quest_id=quest_id,
            quest_text=text,
            reward_amount=reward,
            tier_multiplier=multiplier,
            completed_at=isoformat(moment)
        )
        preview = text[:DESCRIPTION_PREVIEW_CHARS] or quest_id
        result = self.repository.insert_adventure(
            completion,
            description=f"Adventure completed: {preview}",
            reference_id=f"adventure_{quest_id}"
        )
        if not result.inserted:
            logger.warning(f"Adventure {quest_id} already completed by {wallet_address}")
            raise AlreadyCompleted(quest_id)

        logger.info(f"Adventure {quest_id} completed by {wallet_address}, reward {reward}")
        return AdventureResult(
            quest_id=quest_id,
            reward=reward,
            tier_multiplier=multiplier,
            new_balance=result.new_balance
        )
