"""Withdrawal settler — debit, then dispatch payout and fee transfers.

All validation happens before the debit. Once the debit commits nothing is
reversed automatically and nothing is raised: any failure after it (transfer
or store) marks the withdrawal ``incident`` for manual reconciliation and is
reported back with its id.
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
    InvalidAmount,
    LedgerError,
    StoreUnavailable,
    WithdrawalLimitExceeded,
)
from .models import Asset
from .utils import from_units, is_valid_address, normalize_address, to_units

if TYPE_CHECKING:
    from .chain_client import TransferClient
    from .config import LedgerConfig


class WithdrawalStatus(Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"
    DISPATCH_FAILED = "transfer_dispatch_failed"


@dataclass
class WithdrawalResult:
    status: WithdrawalStatus
    asset: Asset
    amount: Decimal
    withdrawal_id: int | None = None
    payout: Decimal | None = None
    fee: Decimal | None = None
    payout_reference: str | None = None
    fee_reference: str | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is WithdrawalStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "withdrawal_id": self.withdrawal_id,
            "asset": self.asset.value,
            "amount": str(self.amount),
            "payout": None if self.payout is None else str(self.payout),
            "fee": None if self.fee is None else str(self.fee),
            "payout_reference": self.payout_reference,
            "fee_reference": self.fee_reference,
        }


class WithdrawalSettler:
    """Validates withdrawals and dispatches them to the custody signer."""

    def __init__(
        self,
        config: LedgerConfig,
        database: LedgerDatabase,
        transfers: TransferClient,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._transfers = transfers
        self._logger = logger

        # Metrics counters
        self.metrics_completed = 0
        self.metrics_incidents = 0

    def max_withdrawal(self, asset: Asset) -> Decimal:
        asset_cfg = getattr(self._config.assets, asset.value)
        return Decimal(str(asset_cfg.max_withdrawal))

    def split_fee(self, asset: Asset, amount: Decimal) -> tuple[Decimal, Decimal]:
        """Return ``(payout, fee)`` with the fee truncated to ledger precision."""
        rate = Decimal(str(self._config.withdrawal.fee_rate))
        fee = from_units(to_units(amount * rate, asset.decimals), asset.decimals)
        return amount - fee, fee

    def _fee_address(self) -> str | None:
        operator = self._config.withdrawal.operator_address
        if operator and is_valid_address(operator):
            return normalize_address(operator)
        return None

    async def _validate(self, user_id: str, asset: Asset, amount: Decimal) -> None:
        if not self._config.withdrawal.enabled:
            raise Disabled("Withdrawals are currently disabled")
        if amount <= 0 or to_units(amount, asset.decimals) <= 0:
            raise InvalidAmount(f"Withdrawal amount must be positive, got {amount}")
        limit = self.max_withdrawal(asset)
        if amount > limit:
            raise WithdrawalLimitExceeded(f"Maximum {asset.value} withdrawal is {limit}")
        account = await self._db.require_account(user_id)
        if account.balance(asset) < amount:
            raise InsufficientFunds(
                f"Balance {account.balance(asset)} {asset.value} is below {amount}",
            )

    async def withdraw(self, user_id: str, asset: Asset, amount: Decimal) -> WithdrawalResult:
        """Debit ``amount`` and send payout plus fee on chain."""
        amount = from_units(to_units(amount, asset.decimals), asset.decimals)
        try:
            await self._validate(user_id, asset, amount)
            payout, fee = self.split_fee(asset, amount)
            fee_address = self._fee_address()
            withdrawal = await self._db.create_withdrawal(user_id, asset, amount, fee, fee_address)
        except StoreUnavailable:
            raise
        except LedgerError as e:
            return WithdrawalResult(
                status=WithdrawalStatus.REJECTED, asset=asset, amount=amount,
                error_kind=e.kind, error=str(e),
            )

        self._logger.info(
            "Withdrawal %d: %s debited %s %s (payout %s, fee %s)",
            withdrawal.id, user_id, amount, asset.value, payout, fee,
        )
        result = WithdrawalResult(
            status=WithdrawalStatus.COMPLETED, asset=asset, amount=amount,
            withdrawal_id=withdrawal.id, payout=payout, fee=fee,
        )

        # The debit is committed: from here on every failure is an incident.
        stage = "payout dispatch"
        try:
            result.payout_reference = await self._transfers.send(
                withdrawal.to_address, asset, payout,
            )
            stage = "payout bookkeeping"
            await self._db.update_withdrawal(
                withdrawal.id, "payout_sent", payout_reference=result.payout_reference,
            )

            if fee > 0 and fee_address:
                stage = "fee dispatch"
                result.fee_reference = await self._transfers.send(fee_address, asset, fee)
            elif fee > 0:
                self._logger.info(
                    "No operator address configured; fee %s %s retained in custody wallet",
                    fee, asset.value,
                )

            stage = "completion bookkeeping"
            await self._db.update_withdrawal(
                withdrawal.id, "completed", fee_reference=result.fee_reference,
            )
        except Exception as e:
            return await self._incident(result, f"{stage} failed: {e}")

        self.metrics_completed += 1
        return result

    async def _incident(self, result: WithdrawalResult, message: str) -> WithdrawalResult:
        self._logger.error(
            "Withdrawal %d needs manual reconciliation: %s", result.withdrawal_id, message,
        )
        self.metrics_incidents += 1
        result.status = WithdrawalStatus.DISPATCH_FAILED
        result.error_kind = ErrorKind.TRANSFER_DISPATCH_FAILED
        result.error = message
        try:
            await self._db.update_withdrawal(
                result.withdrawal_id, "incident", error=message,
                payout_reference=result.payout_reference,
                fee_reference=result.fee_reference,
            )
        except Exception:
            self._logger.exception(
                "Could not mark withdrawal %d as incident; row left in its last state",
                result.withdrawal_id,
            )
        return result
