"""
Tier multiplier resolution.

Every reward calculator resolves its multiplier here. The table is fixed in
code: no dynamic fetching.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class TierInfo:
    """Display name and reward multiplier for a membership tier."""
    level: int
    name: str
    multiplier: float


@dataclass(frozen=True)
class TierTable:
    """Fixed tier table for reward calculation."""
    tiers: Dict[int, TierInfo]
    default_level: int = 1

    def get_tier(self, level: Optional[int]) -> TierInfo:
        """Get tier info, falling back to the base tier.

        Args:
            level: Stored tier level, possibly missing or out of range

        Returns:
            TierInfo for the level, or for tier 1 if the level is unknown
        """
        if level in self.tiers:
            return self.tiers[level]
        return self.tiers[self.default_level]


TIER_TABLE = TierTable({
    1: TierInfo(level=1, name="Bronze", multiplier=1.0),
    2: TierInfo(level=2, name="Silver", multiplier=1.5),
    3: TierInfo(level=3, name="Gold", multiplier=2.0),
    4: TierInfo(level=4, name="Platinum", multiplier=3.0),
    5: TierInfo(level=5, name="Diamond", multiplier=5.0),
})


def resolve_tier(level: Optional[int]) -> TierInfo:
    return TIER_TABLE.get_tier(level)


def resolve_multiplier(level: Optional[int]) -> float:
    """Reward multiplier for a tier level; unknown levels get 1.0."""
    return TIER_TABLE.get_tier(level).multiplier


def apply_multiplier(base: int, multiplier: float) -> int:
    """Scale a base reward by a tier multiplier, rounding down.

    Args:
        base: Base reward in points
        multiplier: Tier multiplier

    Returns:
        floor(base * multiplier)
    """
    return int(math.floor(base * multiplier))
