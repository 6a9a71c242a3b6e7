"""Tests for kryten_ledger.session module."""

from __future__ import annotations

from decimal import Decimal

import pytest

from kryten_ledger.models import Asset
from kryten_ledger.session import (
    IDLE,
    Cancelled,
    Confirm,
    Decline,
    ExecuteWithdrawal,
    JackpotOffered,
    Nothing,
    PlaceJackpot,
    Reset,
    Session,
    SessionState,
    SessionStore,
    WithdrawRequested,
    transition,
)

TIMEOUT = 120


class TestTransition:
    def test_withdraw_then_confirm(self):
        session, effect = transition(IDLE, WithdrawRequested(Asset.STABLE, Decimal(10)), 0, TIMEOUT)
        assert session.state is SessionState.WITHDRAW_PENDING
        assert effect == Nothing()

        session, effect = transition(session, Confirm(), 5, TIMEOUT)
        assert session is IDLE
        assert effect == ExecuteWithdrawal(Asset.STABLE, Decimal(10))

    def test_jackpot_offer_then_confirm(self):
        session, _ = transition(IDLE, JackpotOffered(), 0, TIMEOUT)
        _, effect = transition(session, Confirm(), 1, TIMEOUT)
        assert effect == PlaceJackpot()

    def test_decline_pending(self):
        session, _ = transition(IDLE, JackpotOffered(), 0, TIMEOUT)
        session, effect = transition(session, Decline(), 1, TIMEOUT)
        assert session is IDLE
        assert effect == Cancelled(SessionState.JACKPOT_OFFERED)

    def test_confirm_when_idle_does_nothing(self):
        assert transition(IDLE, Confirm(), 0, TIMEOUT) == (IDLE, Nothing())

    def test_decline_when_idle_does_nothing(self):
        assert transition(IDLE, Decline(), 0, TIMEOUT) == (IDLE, Nothing())

    def test_expired_session_is_idle(self):
        session, _ = transition(IDLE, WithdrawRequested(Asset.NATIVE, Decimal(1)), 0, TIMEOUT)
        _, effect = transition(session, Confirm(), TIMEOUT + 1, TIMEOUT)
        assert effect == Nothing()

    def test_new_request_replaces_pending(self):
        session, _ = transition(IDLE, WithdrawRequested(Asset.NATIVE, Decimal(1)), 0, TIMEOUT)
        session, _ = transition(session, JackpotOffered(), 1, TIMEOUT)
        _, effect = transition(session, Confirm(), 2, TIMEOUT)
        assert effect == PlaceJackpot()

    def test_reset(self):
        session, _ = transition(IDLE, JackpotOffered(), 0, TIMEOUT)
        assert transition(session, Reset(), 1, TIMEOUT) == (IDLE, Nothing())

    def test_unknown_event(self):
        with pytest.raises(TypeError):
            transition(IDLE, object(), 0, TIMEOUT)

    def test_sessions_are_immutable(self):
        with pytest.raises(AttributeError):
            IDLE.state = SessionState.JACKPOT_OFFERED


class TestSessionStore:
    def test_idle_sessions_not_stored(self):
        store = SessionStore(TIMEOUT)
        store.apply("alice", JackpotOffered(), 0)
        assert len(store) == 1
        store.apply("alice", Decline(), 1)
        assert len(store) == 0
        assert store.get("alice") == Session()

    def test_per_user(self):
        store = SessionStore(TIMEOUT)
        store.apply("alice", JackpotOffered(), 0)
        assert store.apply("bob", Confirm(), 1) == Nothing()
        assert store.apply("alice", Confirm(), 1) == PlaceJackpot()

    def test_prune_drops_only_expired(self):
        store = SessionStore(TIMEOUT)
        store.apply("alice", JackpotOffered(), 0)
        store.apply("bob", WithdrawRequested(asset=Asset.STABLE, amount=Decimal(5)), 100)

        assert store.prune(TIMEOUT + 50) == 1
        assert len(store) == 1
        assert store.get("alice") == IDLE
        assert store.get("bob").state is SessionState.WITHDRAW_PENDING
