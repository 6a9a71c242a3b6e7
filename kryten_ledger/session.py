"""Per-user conversation state for confirmations over PM.

``transition`` is a pure function: it takes the current session, an event
and the current time, and returns the next session plus a single effect for
the caller to execute. No I/O happens here.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Union

from .models import Asset


class SessionState(Enum):
    IDLE = "idle"
    WITHDRAW_PENDING = "withdraw_pending"
    JACKPOT_OFFERED = "jackpot_offered"


@dataclass(frozen=True)
class Session:
    state: SessionState = SessionState.IDLE
    asset: Asset | None = None
    amount: Decimal | None = None
    updated_at: float = 0.0


IDLE = Session()


# ── Events ──────────────────────────────────────────────────

@dataclass(frozen=True)
class WithdrawRequested:
    asset: Asset
    amount: Decimal


@dataclass(frozen=True)
class JackpotOffered:
    pass


@dataclass(frozen=True)
class Confirm:
    pass


@dataclass(frozen=True)
class Decline:
    pass


@dataclass(frozen=True)
class Reset:
    pass


Event = Union[WithdrawRequested, JackpotOffered, Confirm, Decline, Reset]


# ── Effects ─────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecuteWithdrawal:
    asset: Asset
    amount: Decimal


@dataclass(frozen=True)
class PlaceJackpot:
    pass


@dataclass(frozen=True)
class Cancelled:
    state: SessionState


@dataclass(frozen=True)
class Nothing:
    pass


Effect = Union[ExecuteWithdrawal, PlaceJackpot, Cancelled, Nothing]


def is_expired(session: Session, now: float, timeout: float) -> bool:
    return session.state is not SessionState.IDLE and now - session.updated_at > timeout


def transition(
    session: Session, event: Event, now: float, timeout: float,
) -> tuple[Session, Effect]:
    """Advance a session. Expired pending sessions behave as idle."""
    if is_expired(session, now, timeout):
        session = IDLE

    if isinstance(event, Reset):
        return IDLE, Nothing()

    if isinstance(event, WithdrawRequested):
        return Session(
            state=SessionState.WITHDRAW_PENDING,
            asset=event.asset,
            amount=event.amount,
            updated_at=now,
        ), Nothing()

    if isinstance(event, JackpotOffered):
        return Session(state=SessionState.JACKPOT_OFFERED, updated_at=now), Nothing()

    if isinstance(event, Confirm):
        if session.state is SessionState.WITHDRAW_PENDING:
            return IDLE, ExecuteWithdrawal(asset=session.asset, amount=session.amount)
        if session.state is SessionState.JACKPOT_OFFERED:
            return IDLE, PlaceJackpot()
        return IDLE, Nothing()

    if isinstance(event, Decline):
        if session.state is SessionState.IDLE:
            return IDLE, Nothing()
        return IDLE, Cancelled(state=session.state)

    raise TypeError(f"Unknown session event: {event!r}")


class SessionStore:
    """In-memory sessions keyed by account id."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout
        self._sessions: dict[str, Session] = {}

    def get(self, user_id: str) -> Session:
        return self._sessions.get(user_id, IDLE)

    def apply(self, user_id: str, event: Event, now: float) -> Effect:
        session, effect = transition(self.get(user_id), event, now, self._timeout)
        if session.state is SessionState.IDLE:
            self._sessions.pop(user_id, None)
        else:
            self._sessions[user_id] = session
        return effect

    def prune(self, now: float) -> int:
        """Drop pending sessions that have timed out; return how many."""
        expired = [k for k, s in self._sessions.items() if is_expired(s, now, self._timeout)]
        for k in expired:
            del self._sessions[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
