"""
tests/test_ledger_service.py — Append-only Ledger Tests
=========================================================
Balance chain, non-negativity and per-user serialisation of
ledger_service.append_entry(), including concurrent appends from
many threads against a file-backed SQLite database.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import WALLET_A, WALLET_B, create_user
from nuvia.database.models import LedgerReason, User, XPLedger
from nuvia.errors import InsufficientBalanceError, UserNotFoundError
from nuvia.services.ledger_service import (
    append_entry,
    calculate_total_xp,
    count_user_ledger,
    find_chain_breaks,
    get_user_ledger,
    get_xp_summary,
)


def _append(engine, user_id, delta, reason=LedgerReason.ADMIN_ADJUSTMENT):
    with Session(engine) as session:
        entry = append_entry(session, user_id, delta, reason)
        session.commit()
        return entry.seq, entry.balance_after


class TestAppendEntry:
    def test_first_entry(self, db_engine):
        uid = create_user(db_engine)
        seq, balance = _append(db_engine, uid, 100, LedgerReason.DEPOSIT)
        assert (seq, balance) == (1, 100)

        with Session(db_engine) as session:
            assert session.get(User, uid).total_xp == 100

    def test_balance_chain(self, db_engine):
        uid = create_user(db_engine)
        _append(db_engine, uid, 100)
        _append(db_engine, uid, 50)
        seq, balance = _append(db_engine, uid, -30, LedgerReason.PENALTY)
        assert (seq, balance) == (3, 120)

        with Session(db_engine) as session:
            entries = get_user_ledger(session, uid)
            assert [e.seq for e in entries] == [3, 2, 1]
            assert [e.balance_after for e in entries] == [120, 150, 100]
            assert calculate_total_xp(session, uid) == 120
            assert find_chain_breaks(session, uid) == []

    def test_loaded_user_sees_new_balance(self, db_engine):
        uid = create_user(db_engine)
        with Session(db_engine) as session:
            user = session.get(User, uid)
            assert user.total_xp == 0
            append_entry(session, uid, 25, LedgerReason.SWAP)
            assert user.total_xp == 25
            session.commit()

    def test_negative_balance_rejected_and_nothing_written(self, db_engine):
        uid = create_user(db_engine)
        _append(db_engine, uid, 50)
        with pytest.raises(InsufficientBalanceError):
            _append(db_engine, uid, -100, LedgerReason.PENALTY)

        with Session(db_engine) as session:
            assert session.get(User, uid).total_xp == 50
            assert count_user_ledger(session, uid) == 1

    def test_exact_drain_to_zero_is_allowed(self, db_engine):
        uid = create_user(db_engine)
        _append(db_engine, uid, 40)
        _, balance = _append(db_engine, uid, -40, LedgerReason.PENALTY)
        assert balance == 0

    def test_unknown_user(self, db_engine):
        with pytest.raises(UserNotFoundError):
            _append(db_engine, 424242, 10)

    def test_unknown_reason_rejected(self, db_engine):
        uid = create_user(db_engine)
        with pytest.raises(ValueError):
            _append(db_engine, uid, 10, "free_money")

    def test_users_have_independent_sequences(self, db_engine):
        a = create_user(db_engine, WALLET_A)
        b = create_user(db_engine, WALLET_B)
        _append(db_engine, a, 10)
        _append(db_engine, a, 10)
        seq, _ = _append(db_engine, b, 10)
        assert seq == 1


class TestConcurrentAppends:
    def test_fifty_parallel_credits_keep_the_chain(self, file_engine):
        uid = create_user(file_engine)

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda _: _append(file_engine, uid, 10), range(50)))

        assert sorted(seq for seq, _ in results) == list(range(1, 51))
        assert sorted(balance for _, balance in results) == list(range(10, 510, 10))

        with Session(file_engine) as session:
            assert session.get(User, uid).total_xp == 500
            assert calculate_total_xp(session, uid) == 500
            assert find_chain_breaks(session, uid) == []

    def test_parallel_debits_never_overdraw(self, file_engine):
        uid = create_user(file_engine)
        _append(file_engine, uid, 100)

        def debit(_):
            try:
                _append(file_engine, uid, -30, LedgerReason.PENALTY)
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = list(pool.map(debit, range(10)))

        assert outcomes.count(True) == 3
        with Session(file_engine) as session:
            assert session.get(User, uid).total_xp == 10
            lowest = session.scalar(
                select(func.min(XPLedger.balance_after)).where(XPLedger.user_id == uid)
            )
            assert lowest >= 0
            assert find_chain_breaks(session, uid) == []


class TestSummary:
    def test_breakdown_sorted_by_total(self, db_engine):
        uid = create_user(db_engine)
        _append(db_engine, uid, 100, LedgerReason.DEPOSIT)
        _append(db_engine, uid, 100, LedgerReason.DEPOSIT)
        _append(db_engine, uid, 25, LedgerReason.CLAIM_FAUCET)

        with Session(db_engine) as session:
            summary = get_xp_summary(session, uid)
        assert summary["total_xp"] == 225
        assert summary["breakdown"] == [
            {"reason": "deposit", "total": 200, "count": 2},
            {"reason": "claim_faucet", "total": 25, "count": 1},
        ]
        assert len(summary["recent"]) == 3

    def test_reason_filter(self, db_engine):
        uid = create_user(db_engine)
        _append(db_engine, uid, 100, LedgerReason.DEPOSIT)
        _append(db_engine, uid, 25, LedgerReason.CLAIM_FAUCET)
        with Session(db_engine) as session:
            rows = get_user_ledger(session, uid, reason="claim_faucet")
            assert [r.delta_xp for r in rows] == [25]
            assert count_user_ledger(session, uid, reason="deposit") == 1

    def test_chain_break_detected(self, db_engine):
        uid = create_user(db_engine)
        _append(db_engine, uid, 100)
        with Session(db_engine) as session:
            # Tamper with a row the way a bad manual edit would
            entry = session.scalar(select(XPLedger).where(XPLedger.user_id == uid))
            entry.balance_after = 90
            session.commit()
            breaks = find_chain_breaks(session, uid)
        assert breaks and "running sum 100" in breaks[0]
