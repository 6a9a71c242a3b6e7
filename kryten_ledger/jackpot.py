"""Jackpot controller — a fixed stake risked against the entire pool.

The payout is the pool balance captured before the stake is added. On a
funded win the account receives that amount, the pool resets to zero and
the stake itself is moved to ``house_retained``. Winning against an empty
pool is reported as ``jackpot_unfunded``: the stake stays debited and in the
pool, and no payout happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from .database import LedgerDatabase
from .errors import Disabled, ErrorKind, InsufficientFunds, LedgerError, StoreUnavailable
from .models import POOL_ASSET
from .progression import ProgressionResult, ProgressionTracker
from .rng import SecureDraw

if TYPE_CHECKING:
    from .config import LedgerConfig


class JackpotStatus(Enum):
    WON = "jackpot_won"
    LOST = "jackpot_lost"
    UNFUNDED = "jackpot_unfunded"
    REJECTED = "rejected"


@dataclass
class JackpotResult:
    status: JackpotStatus
    stake: Decimal
    payout: Decimal = Decimal(0)
    pool_before: Decimal | None = None
    account_balance: Decimal | None = None
    pool_balance: Decimal | None = None
    draw_digest: str | None = None
    progression: ProgressionResult | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not JackpotStatus.REJECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "stake": str(self.stake),
            "payout": str(self.payout),
            "pool_before": None if self.pool_before is None else str(self.pool_before),
            "account_balance": None if self.account_balance is None else str(self.account_balance),
            "pool_balance": None if self.pool_balance is None else str(self.pool_balance),
            "draw_digest": self.draw_digest,
            "progression": self.progression.to_dict() if self.progression else None,
        }


class JackpotController:
    """Places jackpot wagers."""

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

        # Metrics counters
        self.metrics_jackpots = 0
        self.metrics_jackpot_wins = 0

    @property
    def stake(self) -> Decimal:
        return Decimal(str(self._config.jackpot.stake))

    def can_offer(self, balance: Decimal) -> bool:
        """Whether the chat surface should offer a jackpot to a balance this size."""
        cfg = self._config.jackpot
        return cfg.enabled and cfg.offer_after_win and balance >= self.stake

    async def place_jackpot(self, user_id: str) -> JackpotResult:
        """Risk the configured stake against the pool."""
        cfg = self._config.jackpot
        stake = self.stake
        try:
            if not cfg.enabled:
                raise Disabled("Jackpot is currently disabled")
            account = await self._db.require_account(user_id)
            if account.balance(POOL_ASSET) < stake:
                raise InsufficientFunds(
                    f"Jackpot needs {stake}, balance is {account.balance(POOL_ASSET)}",
                )
        except StoreUnavailable:
            raise
        except LedgerError as e:
            return JackpotResult(
                status=JackpotStatus.REJECTED, stake=stake, error_kind=e.kind, error=str(e),
            )

        draw = self._rng.draw()
        won = draw.hit(cfg.win_probability)
        self._logger.info(
            "Jackpot draw for %s: value=%.6f digest=%s", user_id, draw.value, draw.digest,
        )

        try:
            settlement = await self._db.settle_jackpot(
                user_id, stake, won, metadata={"digest": draw.digest},
            )
        except StoreUnavailable:
            raise
        except LedgerError as e:
            return JackpotResult(
                status=JackpotStatus.REJECTED, stake=stake, error_kind=e.kind, error=str(e),
            )

        self.metrics_jackpots += 1
        if won and settlement.funded:
            status = JackpotStatus.WON
            self.metrics_jackpot_wins += 1
            self._logger.info(
                "JACKPOT: %s won %s; pool reset, stake %s retained by house",
                user_id, settlement.payout, stake,
            )
        elif won:
            status = JackpotStatus.UNFUNDED
            self._logger.warning(
                "Jackpot won by %s against an empty pool; no payout", user_id,
            )
        else:
            status = JackpotStatus.LOST

        xp = cfg.win_xp if status is JackpotStatus.WON else cfg.loss_xp
        progression = None
        if xp > 0:
            try:
                progression = await self._progression.add_experience(user_id, xp)
            except LedgerError:
                self._logger.exception("Failed to award %d XP to %s", xp, user_id)

        return JackpotResult(
            status=status,
            stake=settlement.stake,
            payout=settlement.payout,
            pool_before=settlement.pool_before,
            account_balance=settlement.account_balance,
            pool_balance=settlement.pool_balance,
            draw_digest=draw.digest,
            progression=progression,
        )
