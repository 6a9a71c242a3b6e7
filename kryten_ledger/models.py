"""Core ledger data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from .utils import from_units


class Asset(Enum):
    """Custodied assets. Ledger precision is part of the stored format."""

    NATIVE = "native"
    STABLE = "stable"

    @property
    def decimals(self) -> int:
        return _LEDGER_DECIMALS[self]

    @property
    def column(self) -> str:
        return f"{self.value}_balance"

    @classmethod
    def parse(cls, value: str) -> Asset:
        """Accept 'native'/'stable' or the common symbols."""
        key = value.strip().lower()
        aliases = {"eth": cls.NATIVE, "usdc": cls.STABLE}
        if key in aliases:
            return aliases[key]
        return cls(key)


_LEDGER_DECIMALS = {Asset.NATIVE: 9, Asset.STABLE: 6}

POOL_ASSET = Asset.STABLE


@dataclass
class Account:
    """A user's balances, wager statistics and progression."""

    user_id: str
    username: str | None
    address: str | None
    native_balance: Decimal
    stable_balance: Decimal
    total_wagers: int = 0
    total_wagered: Decimal = Decimal(0)
    wins: int = 0
    losses: int = 0
    total_won: Decimal = Decimal(0)
    total_lost: Decimal = Decimal(0)
    biggest_wager: Decimal = Decimal(0)
    xp: int = 0
    level: int = 1
    login_streak: int = 0
    last_login_date: str | None = None
    created_at: str | None = None

    def balance(self, asset: Asset) -> Decimal:
        return self.native_balance if asset is Asset.NATIVE else self.stable_balance

    @property
    def win_rate(self) -> float:
        if self.total_wagers == 0:
            return 0.0
        return self.wins / self.total_wagers * 100

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Account:
        stable = Asset.STABLE.decimals
        return cls(
            user_id=row["user_id"],
            username=row["username"],
            address=row["address"],
            native_balance=from_units(row["native_balance"], Asset.NATIVE.decimals),
            stable_balance=from_units(row["stable_balance"], stable),
            total_wagers=row["total_wagers"],
            total_wagered=from_units(row["total_wagered"], stable),
            wins=row["wins"],
            losses=row["losses"],
            total_won=from_units(row["total_won"], stable),
            total_lost=from_units(row["total_lost"], stable),
            biggest_wager=from_units(row["biggest_wager"], stable),
            xp=row["xp"],
            level=row["level"],
            login_streak=row["login_streak"],
            last_login_date=row["last_login_date"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "address": self.address,
            "native_balance": str(self.native_balance),
            "stable_balance": str(self.stable_balance),
            "total_wagers": self.total_wagers,
            "total_wagered": str(self.total_wagered),
            "wins": self.wins,
            "losses": self.losses,
            "total_won": str(self.total_won),
            "total_lost": str(self.total_lost),
            "biggest_wager": str(self.biggest_wager),
            "xp": self.xp,
            "level": self.level,
            "login_streak": self.login_streak,
        }


@dataclass(frozen=True)
class DepositEvent:
    """An asset transfer into the pool wallet, as seen on chain."""

    from_address: str
    asset: Asset
    amount: Decimal
    block_number: int
    tx_hash: str
    log_index: int = -1  # -1 for native value transfers

    @property
    def key(self) -> str:
        return f"{self.tx_hash.lower()}:{self.log_index}"


@dataclass
class WagerSettlement:
    """What the store committed for one wager."""

    won: bool
    stake: Decimal
    payout: Decimal
    shortfall: Decimal
    account_balance: Decimal
    pool_balance: Decimal


@dataclass
class JackpotSettlement:
    won: bool
    funded: bool
    stake: Decimal
    payout: Decimal
    pool_before: Decimal
    account_balance: Decimal
    pool_balance: Decimal


@dataclass
class ExperienceUpdate:
    xp: int
    level: int
    levels_gained: list[int] = field(default_factory=list)


@dataclass
class Withdrawal:
    id: int
    account_id: str
    asset: Asset
    amount: Decimal
    payout_amount: Decimal
    fee_amount: Decimal
    to_address: str
    fee_address: str | None
    status: str
    payout_reference: str | None = None
    fee_reference: str | None = None
    error: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Withdrawal:
        asset = Asset(row["asset"])
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            asset=asset,
            amount=from_units(row["amount"], asset.decimals),
            payout_amount=from_units(row["payout_amount"], asset.decimals),
            fee_amount=from_units(row["fee_amount"], asset.decimals),
            to_address=row["to_address"],
            fee_address=row["fee_address"],
            status=row["status"],
            payout_reference=row["payout_reference"],
            fee_reference=row["fee_reference"],
            error=row["error"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "asset": self.asset.value,
            "amount": str(self.amount),
            "payout_amount": str(self.payout_amount),
            "fee_amount": str(self.fee_amount),
            "to_address": self.to_address,
            "status": self.status,
            "payout_reference": self.payout_reference,
            "fee_reference": self.fee_reference,
            "error": self.error,
            "created_at": self.created_at,
        }
