"""
nuvia.api.routes.leaderboard — Public leaderboard reads
========================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from nuvia.api.deps import get_current_user, get_session
from nuvia.database.models import LeaderboardPeriod
from nuvia.services.leaderboard_service import get_leaderboard, get_user_rank

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


def _period(value: str) -> str:
    try:
        return LeaderboardPeriod(value).value
    except ValueError:
        raise HTTPException(400, f"Unknown period: {value}")


@router.get("")
def leaderboard(
    period: str = "all-time",
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Rows from the newest snapshot of *period*."""
    snapshot, rows = get_leaderboard(
        session, _period(period), limit=page_size, skip=(page - 1) * page_size
    )
    return {
        "period": period,
        "generated_at": snapshot.generated_at.isoformat() if snapshot else None,
        "total": snapshot.total_users if snapshot else 0,
        "page": page,
        "page_size": page_size,
        "rows": [
            {
                "rank": r.rank,
                "user_id": r.user_id,
                "wallet_address": r.wallet_address,
                "score": r.score,
            }
            for r in rows
        ],
    }


@router.get("/me")
def my_rank(
    user: Annotated[dict, Depends(get_current_user)],
    period: str = "all-time",
    session: Session = Depends(get_session),
):
    row = get_user_rank(session, _period(period), user["user_id"])
    return {
        "period": period,
        "rank": row.rank if row else None,
        "score": row.score if row else 0,
    }


@router.get("/snapshot/latest")
def latest(
    period: str = "all-time",
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    """Metadata and top rows of the newest snapshot; 404 before the first run."""
    snapshot, rows = get_leaderboard(session, _period(period), limit=limit)
    if snapshot is None:
        raise HTTPException(404, f"No {period} leaderboard snapshot yet")
    return {
        "id": snapshot.id,
        "period": snapshot.period,
        "period_start": snapshot.period_start.isoformat() if snapshot.period_start else None,
        "period_end": snapshot.period_end.isoformat() if snapshot.period_end else None,
        "generated_at": snapshot.generated_at.isoformat(),
        "total_users": snapshot.total_users,
        "rows": [
            {
                "rank": r.rank,
                "user_id": r.user_id,
                "wallet_address": r.wallet_address,
                "score": r.score,
            }
            for r in rows
        ],
    }
