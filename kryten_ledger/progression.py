"""Progression tracker — experience points, cascading levels, level rewards.

XP is progress within the current level. Leaving level L costs
``floor(base_xp * growth ** (L - 1))`` XP; a large award cascades through
several levels at once. Each level gained moves a fixed reward from the pool
to the account in its own transaction, and an unfunded reward is skipped
without undoing the level.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from .database import LedgerDatabase
from .errors import InsufficientPool

if TYPE_CHECKING:
    from .config import LedgerConfig


BADGES = {
    1: "Beginner",
    2: "Intermediate",
    3: "Advanced",
    4: "Expert",
    5: "Master",
    6: "Elite",
    7: "Champion",
    8: "Legend",
    9: "Hero",
    10: "King/Queen",
}
DEFAULT_BADGE = "Novice"


def badge_for_level(level: int) -> str:
    return BADGES.get(level, DEFAULT_BADGE)


@dataclass
class ProgressionResult:
    new_xp: int
    new_level: int
    levels_gained: list[int] = field(default_factory=list)
    rewards_granted: list[int] = field(default_factory=list)
    rewards_skipped: list[int] = field(default_factory=list)

    @property
    def leveled_up(self) -> bool:
        return bool(self.levels_gained)

    def to_dict(self) -> dict:
        return {
            "xp": self.new_xp,
            "level": self.new_level,
            "leveled_up": self.leveled_up,
            "levels_gained": self.levels_gained,
            "rewards_granted": self.rewards_granted,
            "rewards_skipped": self.rewards_skipped,
        }


class ProgressionTracker:
    """Awards XP and pays pool-funded level rewards."""

    def __init__(
        self,
        config: LedgerConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

    def threshold(self, level: int) -> int:
        """XP needed to leave ``level``."""
        cfg = self._config.progression
        return math.floor(cfg.base_xp * cfg.growth ** (level - 1))

    async def add_experience(self, user_id: str, amount: int) -> ProgressionResult:
        """Add XP, cascade level-ups and pay one reward per level gained."""
        update = await self._db.add_experience(user_id, amount, self.threshold)
        result = ProgressionResult(
            new_xp=update.xp,
            new_level=update.level,
            levels_gained=list(update.levels_gained),
        )
        if not update.levels_gained:
            return result

        self._logger.info(
            "%s reached level %d (%s)", user_id, update.level, badge_for_level(update.level),
        )
        reward = Decimal(str(self._config.progression.level_reward))
        for level in update.levels_gained:
            if reward <= 0:
                continue
            try:
                await self._db.grant_level_reward(user_id, reward, level)
            except InsufficientPool:
                self._logger.warning(
                    "Level %d reward for %s skipped: pool cannot fund %s", level, user_id, reward,
                )
                result.rewards_skipped.append(level)
            else:
                result.rewards_granted.append(level)
        return result
