"""
Per-conversation dialogue reward calculator.

Rewards every dialogue turn. After the daily limit the reward drops to a
minimal base instead of being denied. The first-chat bonus is verified
against today's records rather than trusted from the caller.

Dialogue rewards carry no idempotency key: two submissions for the same turn
are two credits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from memo_guard.storage.db import DEFAULT_DB_PATH
from memo_guard.storage.ledger_repository import LedgerRepository
from memo_guard.storage.models import DialogueRewardRecord

from .calendar import day_bounds, isoformat, utc_now
from .errors import InvalidRequest
from .tiers import apply_multiplier, resolve_multiplier

logger = logging.getLogger(__name__)

DAILY_DIALOGUE_LIMIT = 50
BASE_REWARD = 10
OVER_LIMIT_REWARD = 1
FIRST_CHAT_BONUS = 30


def resonance_bonus(score: Optional[float]) -> int:
    """Bonus points for a resonance score in 0..100."""
    if score is None:
        return 0
    if score >= 90:
        return 100
    if score >= 70:
        return 30
    if score >= 40:
        return 10
    return 0


@dataclass(frozen=True)
class DialogueResult:
    dialogue_index: int
    reward: int
    base: int
    first_chat_bonus: int
    resonance_bonus: int
    tier_multiplier: float
    is_over_limit: bool
    new_balance: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "dialogueIndex": self.dialogue_index,
            "reward": self.reward,
            "breakdown": {
                "base": self.base,
                "firstChatBonus": self.first_chat_bonus,
                "resonanceBonus": self.resonance_bonus,
                "tierMultiplier": self.tier_multiplier,
            },
            "isOverLimit": self.is_over_limit,
            "newBalance": self.new_balance,
        }


class DialogueRewardService:

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.repository = LedgerRepository(db_path)

    def reward(
        self,
        wallet_address: str,
        session_id: Optional[str] = None,
        is_first_chat: bool = False,
        resonance_grade: Optional[str] = None,
        resonance_score: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> DialogueResult:
        """Compute and credit the reward for one dialogue turn.

        Args:
            wallet_address: Identity being rewarded
            session_id: Optional conversation id, stored on the record
            is_first_chat: Caller's claim that this is today's first chat
            resonance_grade: Optional grade letter, stored as-is (default B)
            resonance_score: Optional score in 0..100
            now: Clock override

        Returns:
            DialogueResult with the reward breakdown and new balance

        Raises:
            InvalidRequest: If the resonance score is outside 0..100
        """
        if resonance_score is not None and not 0 <= resonance_score <= 100:
            raise InvalidRequest(
                f"resonanceScore must be between 0 and 100, got {resonance_score}",
                "invalid_resonance_score"
            )

        moment = utc_now(now)
        start, end = day_bounds(moment)
        daily_count = self.repository.count_dialogues_between(wallet_address, start, end)
        over_limit = daily_count >= DAILY_DIALOGUE_LIMIT
        base = OVER_LIMIT_REWARD if over_limit else BASE_REWARD

        first_chat = bool(is_first_chat) and not self.repository.has_first_chat_between(
            wallet_address, start, end
        )
        first_bonus = FIRST_CHAT_BONUS if first_chat else 0
        res_bonus = resonance_bonus(resonance_score)

        account = self.repository.get_account(wallet_address)
        multiplier = resolve_multiplier(account.tier if account else None)
        final = apply_multiplier(base + first_bonus + res_bonus, multiplier)

        record = DialogueRewardRecord(
            wallet_address=wallet_address,
            session_id=session_id or "",
            dialogue_index=daily_count + 1,
            base_reward=base,
            first_chat_bonus=first_bonus,
            resonance_bonus=res_bonus,
            resonance_grade=resonance_grade or "B",
            tier_multiplier=multiplier,
            final_reward=final,
            is_first_chat=first_chat,
            is_over_limit=over_limit,
            created_at=isoformat(moment)
        )
        balance = self.repository.insert_dialogue_reward(
            record,
            description=f"Dialogue reward #{daily_count + 1}",
            reference_id=f"dialogue_{int(moment.timestamp() * 1000)}"
        )

        if over_limit:
            logger.warning(f"{wallet_address} is over the daily dialogue limit, minimal reward {final}")
        else:
            logger.info(f"Dialogue reward {final} for {wallet_address} (#{daily_count + 1})")
        return DialogueResult(
            dialogue_index=daily_count + 1,
            reward=final,
            base=base,
            first_chat_bonus=first_bonus,
            resonance_bonus=res_bonus,
            tier_multiplier=multiplier,
            is_over_limit=over_limit,
            new_balance=balance
        )
