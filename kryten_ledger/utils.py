"""Shared utility helpers for kryten-ledger."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """Lower-case and strip an EVM address for storage and lookup."""
    return address.strip().lower()


def is_valid_address(address: str) -> bool:
    """Return True for a 0x-prefixed 20-byte hex address."""
    return bool(ADDRESS_PATTERN.match(address.strip()))


def normalize_user_id(user_id: str) -> str:
    """Account identities are case-insensitive (chat usernames)."""
    return user_id.strip().lower()


def parse_decimal(value: object) -> Decimal | None:
    """Parse a user/config supplied amount into a finite Decimal, or None."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def to_units(amount: Decimal, decimals: int) -> int:
    """Convert a Decimal amount to integer base units, truncating toward zero."""
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int, decimals: int) -> Decimal:
    """Convert integer base units back to a Decimal amount."""
    return Decimal(units).scaleb(-decimals)


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)
