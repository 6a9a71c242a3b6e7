"""Ledger error taxonomy.

Every error carries an ``ErrorKind`` so engines can report failures as
structured results and the command API can serialize them without
string matching.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    NOT_REGISTERED = "not_registered"
    INVALID_STAKE = "invalid_stake"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_ADDRESS = "invalid_address"
    ADDRESS_IN_USE = "address_in_use"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_POOL = "insufficient_pool"
    WITHDRAWAL_LIMIT_EXCEEDED = "withdrawal_limit_exceeded"
    TRANSFER_DISPATCH_FAILED = "transfer_dispatch_failed"
    UNMATCHED_DEPOSIT = "unmatched_deposit"
    STORE_UNAVAILABLE = "store_unavailable"
    DISABLED = "disabled"


class LedgerError(Exception):
    """Base class for all ledger failures."""

    kind: ErrorKind


class NotRegistered(LedgerError):
    kind = ErrorKind.NOT_REGISTERED


class InvalidStake(LedgerError):
    kind = ErrorKind.INVALID_STAKE


class InvalidAmount(LedgerError):
    kind = ErrorKind.INVALID_AMOUNT


class InvalidAddress(LedgerError):
    kind = ErrorKind.INVALID_ADDRESS


class AddressInUse(LedgerError):
    kind = ErrorKind.ADDRESS_IN_USE


class InsufficientFunds(LedgerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class InsufficientPool(LedgerError):
    """Pool cannot fund a payout or reward. Degraded, never user-facing."""

    kind = ErrorKind.INSUFFICIENT_POOL


class WithdrawalLimitExceeded(LedgerError):
    kind = ErrorKind.WITHDRAWAL_LIMIT_EXCEEDED


class StoreUnavailable(LedgerError):
    """Store failure before commit. The whole operation is safe to retry."""

    kind = ErrorKind.STORE_UNAVAILABLE


class Disabled(LedgerError):
    kind = ErrorKind.DISABLED


class TransferError(Exception):
    """Raised by the transfer client when a send request fails."""


class ChainRpcError(Exception):
    """Raised by the JSON-RPC client on transport or RPC-level errors."""
