"""Deposit reconciler — credit each on-chain transfer exactly once.

The idempotency key (``tx_hash:log_index``) is inserted in the same
transaction as the credit, so replays from an at-least-once chain watcher
are reported as ``duplicate`` instead of crediting twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from .database import LedgerDatabase
from .errors import ErrorKind, LedgerError
from .models import DepositEvent
from .progression import ProgressionTracker
from .utils import from_units, to_units

if TYPE_CHECKING:
    from .config import LedgerConfig


class DepositStatus(Enum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"


@dataclass
class DepositResult:
    status: DepositStatus
    key: str
    account_id: str | None = None
    new_balance: Decimal | None = None

    @property
    def error_kind(self) -> ErrorKind | None:
        return ErrorKind.UNMATCHED_DEPOSIT if self.status is DepositStatus.UNMATCHED else None

    def to_dict(self) -> dict[str, Any]:
        kind = self.error_kind
        return {
            "status": self.status.value,
            "error_kind": None if kind is None else kind.value,
            "key": self.key,
            "account_id": self.account_id,
            "new_balance": None if self.new_balance is None else str(self.new_balance),
        }


class DepositReconciler:
    """Maps deposit events to accounts and credits them."""

    def __init__(
        self,
        config: LedgerConfig,
        database: LedgerDatabase,
        progression: ProgressionTracker,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._progression = progression
        self._logger = logger

        # Metrics counters
        self.metrics_credited = 0
        self.metrics_duplicates = 0
        self.metrics_unmatched = 0

    async def reconcile(self, event: DepositEvent) -> DepositResult:
        """Credit one deposit. StoreUnavailable propagates to the caller."""
        if to_units(event.amount, event.asset.decimals) <= 0:
            self._logger.info("Ignoring non-positive deposit %s (%s)", event.key, event.amount)
            return DepositResult(status=DepositStatus.IGNORED, key=event.key)

        account = await self._db.get_account_by_address(event.from_address)
        if account is None:
            first = await self._db.record_unmatched_deposit(event)
            if first:
                self.metrics_unmatched += 1
                self._logger.warning(
                    "Unmatched deposit %s: %s %s from %s has no registered account",
                    event.key, event.amount, event.asset.value, event.from_address,
                )
            return DepositResult(status=DepositStatus.UNMATCHED, key=event.key)

        new_balance = await self._db.credit_deposit(event, account.user_id)
        if new_balance is None:
            self.metrics_duplicates += 1
            self._logger.debug("Deposit %s already credited", event.key)
            return DepositResult(
                status=DepositStatus.DUPLICATE, key=event.key, account_id=account.user_id,
            )

        self.metrics_credited += 1
        decimals = event.asset.decimals
        remainder = event.amount - from_units(to_units(event.amount, decimals), decimals)
        if remainder:
            self._logger.warning(
                "Deposit %s: %s %s below ledger precision was not credited",
                event.key, format(remainder, "f"), event.asset.value,
            )
        self._logger.info(
            "Credited %s %s to %s (tx %s, block %d)",
            event.amount, event.asset.value, account.user_id, event.key, event.block_number,
        )

        xp = self._config.progression.deposit_xp
        if xp > 0:
            try:
                await self._progression.add_experience(account.user_id, xp)
            except LedgerError:
                self._logger.exception("Failed to award deposit XP to %s", account.user_id)

        return DepositResult(
            status=DepositStatus.CREDITED,
            key=event.key,
            account_id=account.user_id,
            new_balance=new_balance,
        )
