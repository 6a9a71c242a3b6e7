"""Wager engine — fixed-stake wagers against the shared pool.

Every wager validates the stake and account, draws an outcome, then settles
stake, payout and statistics in a single store transaction. A win the pool
cannot fully cover is paid up to the pool balance and reported as
``won_capped`` rather than as a loss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from .database import LedgerDatabase
from .errors import (
    Disabled,
    ErrorKind,
    InsufficientFunds,
    InvalidStake,
    LedgerError,
    StoreUnavailable,
)
from .models import POOL_ASSET
from .progression import ProgressionResult, ProgressionTracker
from .rng import SecureDraw

if TYPE_CHECKING:
    from .config import LedgerConfig


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


class WagerStatus(Enum):
    WON = "won"
    WON_CAPPED = "won_capped"
    LOST = "lost"
    REJECTED = "rejected"


@dataclass
class WagerResult:
    """Result of a single wager."""

    status: WagerStatus
    stake: Decimal
    payout: Decimal = Decimal(0)
    shortfall: Decimal = Decimal(0)
    account_balance: Decimal | None = None
    pool_balance: Decimal | None = None
    draw_digest: str | None = None
    progression: ProgressionResult | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not WagerStatus.REJECTED

    @property
    def won(self) -> bool:
        return self.status in (WagerStatus.WON, WagerStatus.WON_CAPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "stake": str(self.stake),
            "payout": str(self.payout),
            "shortfall": str(self.shortfall),
            "account_balance": None if self.account_balance is None else str(self.account_balance),
            "pool_balance": None if self.pool_balance is None else str(self.pool_balance),
            "draw_digest": self.draw_digest,
            "progression": self.progression.to_dict() if self.progression else None,
        }

    @classmethod
    def rejected(cls, stake: Decimal, error: LedgerError) -> WagerResult:
        return cls(
            status=WagerStatus.REJECTED,
            stake=stake,
            error_kind=error.kind,
            error=str(error),
        )


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class WagerEngine:
    """Validates, draws and settles wagers."""

    def __init__(
        self,
        config: LedgerConfig,
        database: LedgerDatabase,
        progression: ProgressionTracker,
        logger: logging.Logger,
        rng: SecureDraw | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._progression = progression
        self._logger = logger
        self._rng = rng or SecureDraw()
        self._allowed = self._build_allowed(config)

        # Metrics counters
        self.metrics_wagers = 0
        self.metrics_wins = 0
        self.metrics_capped = 0

    @staticmethod
    def _build_allowed(config: LedgerConfig) -> frozenset[Decimal]:
        return frozenset(Decimal(str(s)) for s in config.wager.allowed_stakes)

    @property
    def allowed_stakes(self) -> list[Decimal]:
        return sorted(self._allowed)

    # ══════════════════════════════════════════════════════════
    #  Validation
    # ══════════════════════════════════════════════════════════

    async def _validate(self, user_id: str, stake: Decimal) -> None:
        """Raise a LedgerError before any mutation if the wager is not allowed."""
        if not self._config.wager.enabled:
            raise Disabled("Wagering is currently disabled")
        if stake not in self._allowed:
            allowed = ", ".join(str(s) for s in self.allowed_stakes)
            raise InvalidStake(f"Stake must be one of: {allowed}")
        account = await self._db.require_account(user_id)
        if account.balance(POOL_ASSET) < stake:
            raise InsufficientFunds(
                f"Balance {account.balance(POOL_ASSET)} is below stake {stake}",
            )

    # ══════════════════════════════════════════════════════════
    #  Public API
    # ══════════════════════════════════════════════════════════

    async def place_wager(self, user_id: str, stake: Decimal) -> WagerResult:
        """Place one wager. Validation failures are returned, never raised.

        StoreUnavailable propagates: nothing was committed and the whole
        call is safe to retry.
        """
        try:
            await self._validate(user_id, stake)
        except StoreUnavailable:
            raise
        except LedgerError as e:
            return WagerResult.rejected(stake, e)

        cfg = self._config.wager
        draw = self._rng.draw()
        won = draw.hit(cfg.win_probability)
        self._logger.info(
            "Wager draw for %s: stake=%s value=%.6f digest=%s", user_id, stake, draw.value, draw.digest,
        )

        try:
            settlement = await self._db.settle_wager(
                user_id,
                stake,
                won,
                Decimal(str(cfg.payout_multiplier)),
                metadata={"digest": draw.digest},
            )
        except StoreUnavailable:
            raise
        except LedgerError as e:
            # Balance moved between validation and settlement
            return WagerResult.rejected(stake, e)

        self.metrics_wagers += 1
        self.metrics_wins += int(won)
        status = WagerStatus.WON if won else WagerStatus.LOST
        if won and settlement.shortfall > 0:
            status = WagerStatus.WON_CAPPED
            self.metrics_capped += 1
            self._logger.error(
                "Pool could not cover payout for %s: paid %s, shortfall %s",
                user_id, settlement.payout, settlement.shortfall,
            )
        if settlement.pool_balance == 0:
            self._logger.error("Pool balance is zero after wager by %s; pool needs funding", user_id)

        progression = await self._award_xp(user_id, cfg.win_xp if won else cfg.loss_xp)

        return WagerResult(
            status=status,
            stake=settlement.stake,
            payout=settlement.payout,
            shortfall=settlement.shortfall,
            account_balance=settlement.account_balance,
            pool_balance=settlement.pool_balance,
            draw_digest=draw.digest,
            progression=progression,
        )

    async def _award_xp(self, user_id: str, amount: int) -> ProgressionResult | None:
        """Award XP after a committed settlement. Failures are logged, not raised."""
        if amount <= 0:
            return None
        try:
            return await self._progression.add_experience(user_id, amount)
        except LedgerError:
            self._logger.exception("Failed to award %d XP to %s", amount, user_id)
            return None
