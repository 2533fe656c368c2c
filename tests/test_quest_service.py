"""
tests/test_quest_service.py — Quest Progress Tracker Tests
============================================================
Progress rows per period, completion capping, the claim-once guarantee
and the user-facing read views.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import T0, create_user
from nuvia.database.models import Quest, QuestProgress, User, XPLedger
from nuvia.database.seed import seed_defaults
from nuvia.engine.periods import day_bounds
from nuvia.errors import QuestClaimError
from nuvia.services.quest_service import (
    advance_quests_for_event,
    claim_quest,
    get_or_create_progress,
    list_quests_for_user,
    quest_history,
)


@pytest.fixture
def engine(seeded_engine):
    return seeded_engine


@pytest.fixture
def user_id(engine):
    return create_user(engine)


def _quest_id(engine, name: str) -> int:
    with Session(engine) as session:
        return session.scalar(select(Quest.id).where(Quest.name == name))


def _deposits(engine, uid, count, start=T0):
    completed = []
    for i in range(count):
        completed += advance_quests_for_event(
            engine, uid, "deposit", now=start + timedelta(minutes=i)
        )
    return completed


class TestProgress:
    def test_three_deposits_complete_daily_quest(self, engine, user_id):
        qid = _quest_id(engine, "Daily Depositor")
        assert _deposits(engine, user_id, 2) == []
        assert advance_quests_for_event(engine, user_id, "deposit", now=T0) == [qid]

        with Session(engine) as session:
            progress = session.scalar(select(QuestProgress).where(QuestProgress.quest_id == qid))
            assert progress.progress_value == 3
            assert progress.is_completed
            assert not progress.is_claimed

    def test_progress_is_capped_at_target(self, engine, user_id):
        qid = _quest_id(engine, "Daily Depositor")
        assert _deposits(engine, user_id, 5) == [qid]
        with Session(engine) as session:
            progress = session.scalar(select(QuestProgress).where(QuestProgress.quest_id == qid))
            assert progress.progress_value == 3

    def test_daily_progress_resets_next_day(self, engine, user_id):
        _deposits(engine, user_id, 2)
        _deposits(engine, user_id, 1, start=T0 + timedelta(days=1))
        with Session(engine) as session:
            rows = session.scalars(
                select(QuestProgress).order_by(QuestProgress.period_start)
            ).all()
            assert [r.progress_value for r in rows] == [2, 1]
            assert not any(r.is_completed for r in rows)

    def test_unrelated_action_is_ignored(self, engine, user_id):
        assert advance_quests_for_event(engine, user_id, "select_strategy", now=T0) == []
        with Session(engine) as session:
            assert session.scalar(select(func.count()).select_from(QuestProgress)) == 0

    def test_inactive_quest_is_ignored(self, engine, user_id):
        with Session(engine) as session:
            quest = session.scalar(select(Quest).where(Quest.name == "Daily Depositor"))
            quest.is_active = False
            session.commit()
        assert _deposits(engine, user_id, 3) == []

    def test_one_time_quest(self, engine, user_id):
        qid = _quest_id(engine, "First Supply")
        assert advance_quests_for_event(engine, user_id, "supply", now=T0) == [qid]
        # A year later it is still the same, already-completed row
        assert advance_quests_for_event(
            engine, user_id, "supply", now=T0 + timedelta(days=365)
        ) == []

    def test_get_or_create_is_idempotent(self, engine, user_id):
        start, end = day_bounds(T0)
        with Session(engine) as session:
            quest = session.scalar(select(Quest).where(Quest.name == "Daily Depositor"))
            first = get_or_create_progress(session, user_id, quest, start, end)
            second = get_or_create_progress(session, user_id, quest, start, end)
            assert first.id == second.id
            session.commit()


class TestClaim:
    def test_claim_once(self, engine, user_id):
        qid = _quest_id(engine, "Daily Depositor")
        _deposits(engine, user_id, 3)

        result = claim_quest(engine, user_id, qid, now=T0 + timedelta(hours=1))
        assert result.xp_awarded == 50
        assert result.balance_after == 50

        with pytest.raises(QuestClaimError, match="already claimed"):
            claim_quest(engine, user_id, qid, now=T0 + timedelta(hours=2))

        with Session(engine) as session:
            assert session.get(User, user_id).total_xp == 50
            entries = session.scalars(select(XPLedger).where(XPLedger.user_id == user_id)).all()
            assert [e.reason for e in entries] == ["complete_quest"]

    def test_claim_before_completion(self, engine, user_id):
        qid = _quest_id(engine, "Daily Depositor")
        _deposits(engine, user_id, 1)
        with pytest.raises(QuestClaimError, match="not completed"):
            claim_quest(engine, user_id, qid, now=T0)

    def test_claim_outside_period(self, engine, user_id):
        qid = _quest_id(engine, "Daily Depositor")
        _deposits(engine, user_id, 3)
        with pytest.raises(QuestClaimError, match="not completed"):
            claim_quest(engine, user_id, qid, now=T0 + timedelta(days=1))

    def test_unknown_quest(self, engine, user_id):
        with pytest.raises(QuestClaimError, match="Quest not found"):
            claim_quest(engine, user_id, 9999, now=T0)

    def test_zero_reward_quest_claims_without_ledger_entry(self, engine, user_id):
        with Session(engine) as session:
            session.add(Quest(
                name="Badge Only", cadence="daily", event_type="swap",
                target_count=1, reward_xp=0,
            ))
            session.commit()
        qid = _quest_id(engine, "Badge Only")
        advance_quests_for_event(engine, user_id, "swap", now=T0)
        result = claim_quest(engine, user_id, qid, now=T0)
        assert result.xp_awarded == 0
        assert result.balance_after == 0

    def test_concurrent_claims_pay_once(self, file_engine):
        seed_defaults(file_engine)
        uid = create_user(file_engine)
        qid = _quest_id(file_engine, "Daily Depositor")
        _deposits(file_engine, uid, 3)

        def attempt(_):
            try:
                claim_quest(file_engine, uid, qid, now=T0)
                return True
            except QuestClaimError:
                return False

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(6)))

        assert outcomes.count(True) == 1
        with Session(file_engine) as session:
            assert session.get(User, uid).total_xp == 50


class TestViews:
    def test_list_quests_with_progress(self, engine, user_id):
        _deposits(engine, user_id, 1)
        with Session(engine) as session:
            rows = list_quests_for_user(session, user_id, now=T0)
            by_name = {q.name: p for q, p in rows}
            assert set(by_name) == {"Daily Depositor", "Faucet Regular", "First Supply"}
            assert by_name["Daily Depositor"].progress_value == 1
            assert by_name["Faucet Regular"] is None

            daily = list_quests_for_user(session, user_id, cadence="daily", now=T0)
            assert [q.name for q, _ in daily] == ["Daily Depositor"]

    def test_history_lists_claims(self, engine, user_id):
        qid = _quest_id(engine, "Daily Depositor")
        _deposits(engine, user_id, 3)
        claim_quest(engine, user_id, qid, now=T0)
        with Session(engine) as session:
            history = quest_history(session, user_id)
            assert [p.quest_id for p in history] == [qid]
            assert history[0].quest.name == "Daily Depositor"
