"""
nuvia.services.leaderboard_service — Leaderboard snapshots
===========================================================

A snapshot is a ranked copy of user scores at one instant.  Reads always
go to the newest snapshot of a period so the public board never scans
the ledger.

* ``all-time`` — score is the cached ``users.total_xp``.
* ``daily`` / ``weekly`` — score is the sum of positive ledger deltas
  inside the current UTC period.

Ranking: score descending, ties broken by user id ascending.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from nuvia.constants import utcnow
from nuvia.database.models import (
    LeaderboardPeriod,
    LeaderboardRow,
    LeaderboardSnapshot,
    User,
    XPLedger,
)
from nuvia.engine.periods import day_bounds, week_bounds

logger = logging.getLogger(__name__)


def _scores(
    session: Session, period: LeaderboardPeriod, now: datetime
) -> tuple[list[tuple[int, str, int]], datetime | None, datetime | None]:
    if period == LeaderboardPeriod.ALL_TIME:
        rows = session.execute(
            select(User.id, User.wallet_address, User.total_xp)
            .where(User.is_active.is_(True), User.total_xp > 0)
            .order_by(User.total_xp.desc(), User.id)
        ).all()
        return [(r[0], r[1], int(r[2])) for r in rows], None, None

    start, end = day_bounds(now) if period == LeaderboardPeriod.DAILY else week_bounds(now)
    score = func.sum(XPLedger.delta_xp).label("score")
    rows = session.execute(
        select(User.id, User.wallet_address, score)
        .join(XPLedger, XPLedger.user_id == User.id)
        .where(
            User.is_active.is_(True),
            XPLedger.delta_xp > 0,
            XPLedger.created_at >= start,
            XPLedger.created_at <= end,
        )
        .group_by(User.id, User.wallet_address)
        .order_by(score.desc(), User.id)
    ).all()
    return [(r[0], r[1], int(r[2])) for r in rows], start, end


def generate_snapshot(
    engine: Engine, period: str, *, now: datetime | None = None
) -> LeaderboardSnapshot:
    """Rank every scoring user for *period* and persist the result."""
    now = now or utcnow()
    period = LeaderboardPeriod(period)
    with Session(engine, expire_on_commit=False) as session:
        scores, start, end = _scores(session, period, now)
        snapshot = LeaderboardSnapshot(
            period=period.value,
            period_start=start,
            period_end=end,
            total_users=len(scores),
            generated_at=now,
        )
        snapshot.rows = [
            LeaderboardRow(user_id=uid, wallet_address=wallet, score=value, rank=i)
            for i, (uid, wallet, value) in enumerate(scores, start=1)
        ]
        session.add(snapshot)
        session.commit()
    logger.info("Leaderboard snapshot %s generated with %d rows", period.value, len(scores))
    return snapshot


def latest_snapshot(session: Session, period: str) -> LeaderboardSnapshot | None:
    return session.scalar(
        select(LeaderboardSnapshot)
        .where(LeaderboardSnapshot.period == LeaderboardPeriod(period).value)
        .order_by(LeaderboardSnapshot.generated_at.desc(), LeaderboardSnapshot.id.desc())
        .limit(1)
    )


def get_leaderboard(
    session: Session, period: str, *, limit: int = 100, skip: int = 0
) -> tuple[LeaderboardSnapshot | None, list[LeaderboardRow]]:
    snapshot = latest_snapshot(session, period)
    if snapshot is None:
        return None, []
    rows = session.scalars(
        select(LeaderboardRow)
        .where(LeaderboardRow.snapshot_id == snapshot.id)
        .order_by(LeaderboardRow.rank)
        .offset(skip)
        .limit(limit)
    ).all()
    return snapshot, list(rows)


def get_user_rank(session: Session, period: str, user_id: int) -> LeaderboardRow | None:
    snapshot = latest_snapshot(session, period)
    if snapshot is None:
        return None
    return session.scalar(
        select(LeaderboardRow).where(
            LeaderboardRow.snapshot_id == snapshot.id,
            LeaderboardRow.user_id == user_id,
        )
    )
