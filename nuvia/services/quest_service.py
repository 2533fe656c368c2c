"""
nuvia.services.quest_service — Quest Progress Tracker
======================================================

Progress rows are per (user, quest, period) and created lazily on the
first matching event.  The award pipeline advances them *after* the XP
award has committed, so nothing here can unwind a ledger entry.

Claiming is a separate explicit operation:

1. ``UPDATE quest_progress SET is_claimed = true
   WHERE id = :id AND is_completed AND NOT is_claimed``
2. ledger append (reason ``complete_quest``) in the same transaction.

The conditional UPDATE is the only gate, so a second claim, concurrent
or not, matches zero rows and is rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nuvia.constants import utcnow
from nuvia.database.models import (
    LedgerReason,
    Quest,
    QuestProgress,
    QuestRuleType,
    User,
)
from nuvia.engine.periods import period_bounds
from nuvia.errors import QuestClaimError
from nuvia.services.ledger_service import append_entry

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    quest_id: int
    progress_id: int
    xp_awarded: int
    balance_after: int


# ---------------------------------------------------------------------------
# Progress rows
# ---------------------------------------------------------------------------
def _find_progress(
    session: Session, user_id: int, quest_id: int, period_start: datetime
) -> QuestProgress | None:
    return session.scalar(
        select(QuestProgress).where(
            QuestProgress.user_id == user_id,
            QuestProgress.quest_id == quest_id,
            QuestProgress.period_start == period_start,
        )
    )


def get_or_create_progress(
    session: Session,
    user_id: int,
    quest: Quest,
    period_start: datetime,
    period_end: datetime,
) -> QuestProgress:
    """Return the progress row for the period, inserting it if missing.

    Idempotent; a concurrent insert of the same row is absorbed by the
    unique constraint and the existing row is returned.
    """
    progress = _find_progress(session, user_id, quest.id, period_start)
    if progress is not None:
        return progress

    progress = QuestProgress(
        user_id=user_id,
        quest_id=quest.id,
        period_start=period_start,
        period_end=period_end,
        progress_value=0,
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(progress)
            session.flush()
    except IntegrityError:
        progress = _find_progress(session, user_id, quest.id, period_start)
        if progress is None:
            raise
    return progress


def update_progress(
    session: Session,
    progress: QuestProgress,
    quest: Quest,
    delta: int = 1,
    *,
    event_id: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Advance *progress* by *delta*, capped at the target.

    Returns True when this call completed the quest.
    """
    # Re-read under a row lock so concurrent fan-outs don't lose increments
    progress = session.get(
        QuestProgress, progress.id, with_for_update=True, populate_existing=True
    )
    if progress.is_completed:
        return False

    progress.progress_value = min(progress.progress_value + delta, quest.target_count)
    if event_id is not None:
        progress.last_event_id = event_id
    if progress.progress_value >= quest.target_count:
        progress.is_completed = True
        progress.completed_at = now or utcnow()
        session.flush()
        logger.info(
            "User %d completed quest %d (%s)", progress.user_id, quest.id, quest.name
        )
        return True
    session.flush()
    return False


def active_quests_for_action(session: Session, action_type: str) -> list[Quest]:
    return list(session.scalars(
        select(Quest).where(
            Quest.is_active.is_(True),
            Quest.rule_type == QuestRuleType.EVENT_COUNT.value,
            Quest.event_type == action_type,
        ).order_by(Quest.id)
    ).all())


def advance_quests_for_event(
    engine: Engine,
    user_id: int,
    action_type: str,
    *,
    event_id: int | None = None,
    now: datetime | None = None,
) -> list[int]:
    """Count one matching event toward every active quest for *action_type*.

    Runs in its own transaction.  Returns the ids of quests completed by
    this event.
    """
    now = now or utcnow()
    completed: list[int] = []
    with Session(engine) as session:
        for quest in active_quests_for_action(session, action_type):
            start, end = period_bounds(quest.cadence, now)
            progress = get_or_create_progress(session, user_id, quest, start, end)
            if update_progress(session, progress, quest, 1, event_id=event_id, now=now):
                completed.append(quest.id)
        session.commit()
    return completed


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------
def claim_quest(
    engine: Engine,
    user_id: int,
    quest_id: int,
    *,
    now: datetime | None = None,
) -> ClaimResult:
    """Pay out a completed quest for the current period exactly once.

    Raises
    ------
    QuestClaimError
        Quest missing, not completed in this period, or already claimed.
    """
    now = now or utcnow()
    with Session(engine) as session:
        quest = session.get(Quest, quest_id)
        if quest is None:
            raise QuestClaimError("Quest not found")

        start, _ = period_bounds(quest.cadence, now)
        progress = _find_progress(session, user_id, quest.id, start)
        if progress is None or not progress.is_completed:
            raise QuestClaimError("Quest not completed")

        result = session.execute(
            update(QuestProgress)
            .where(
                QuestProgress.id == progress.id,
                QuestProgress.is_completed.is_(True),
                QuestProgress.is_claimed.is_(False),
            )
            .values(is_claimed=True, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise QuestClaimError("Quest reward already claimed")

        if quest.reward_xp > 0:
            entry = append_entry(
                session,
                user_id,
                quest.reward_xp,
                LedgerReason.COMPLETE_QUEST,
                description=f"Completed quest: {quest.name}",
                metadata={"quest_id": quest.id, "progress_id": progress.id},
                now=now,
            )
            balance_after = entry.balance_after
        else:
            balance_after = session.scalar(select(User.total_xp).where(User.id == user_id))
        session.commit()

        logger.info(
            "User %d claimed quest %d for %d XP", user_id, quest.id, quest.reward_xp
        )
        return ClaimResult(
            quest_id=quest.id,
            progress_id=progress.id,
            xp_awarded=quest.reward_xp,
            balance_after=balance_after,
        )


# ---------------------------------------------------------------------------
# Read views
# ---------------------------------------------------------------------------
def list_quests_for_user(
    session: Session,
    user_id: int,
    *,
    cadence: str | None = None,
    now: datetime | None = None,
) -> list[tuple[Quest, QuestProgress | None]]:
    """Active quests with the user's progress for the current period."""
    now = now or utcnow()
    stmt = select(Quest).where(Quest.is_active.is_(True)).order_by(Quest.id)
    if cadence:
        stmt = stmt.where(Quest.cadence == cadence)
    out: list[tuple[Quest, QuestProgress | None]] = []
    for quest in session.scalars(stmt).all():
        start, _ = period_bounds(quest.cadence, now)
        out.append((quest, _find_progress(session, user_id, quest.id, start)))
    return out


def quest_history(session: Session, user_id: int, *, limit: int = 20) -> list[QuestProgress]:
    """Claimed progress rows, newest claim first."""
    return list(session.scalars(
        select(QuestProgress)
        .where(QuestProgress.user_id == user_id, QuestProgress.is_claimed.is_(True))
        .order_by(QuestProgress.claimed_at.desc(), QuestProgress.id.desc())
        .limit(limit)
    ).all())
