"""
nuvia.api.routes.quests — Quest listing, claiming & history
============================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from nuvia.api.deps import get_current_user, get_engine, get_session
from nuvia.database.models import Quest, QuestCadence, QuestProgress
from nuvia.errors import QuestClaimError
from nuvia.services.quest_service import claim_quest, list_quests_for_user, quest_history

router = APIRouter(prefix="/quests", tags=["quests"])


class QuestClaim(BaseModel):
    quest_id: int


def _quest_dict(q: Quest, p: QuestProgress | None) -> dict:
    return {
        "id": q.id,
        "name": q.name,
        "description": q.description,
        "cadence": q.cadence,
        "event_type": q.event_type,
        "target_count": q.target_count,
        "reward_xp": q.reward_xp,
        "progress": {
            "progress_value": p.progress_value if p else 0,
            "is_completed": bool(p and p.is_completed),
            "is_claimed": bool(p and p.is_claimed),
            "period_start": p.period_start.isoformat() if p else None,
            "period_end": p.period_end.isoformat() if p else None,
        },
    }


@router.get("")
def get_quests(
    user: Annotated[dict, Depends(get_current_user)],
    cadence: str | None = None,
    session: Session = Depends(get_session),
):
    if cadence is not None and cadence not in {c.value for c in QuestCadence}:
        raise HTTPException(400, f"Unknown cadence: {cadence}")
    rows = list_quests_for_user(session, user["user_id"], cadence=cadence)
    return {"quests": [_quest_dict(q, p) for q, p in rows]}


@router.get("/today")
def get_today(
    user: Annotated[dict, Depends(get_current_user)],
    session: Session = Depends(get_session),
):
    """Daily quests with today's progress."""
    rows = list_quests_for_user(session, user["user_id"], cadence=QuestCadence.DAILY.value)
    return {"quests": [_quest_dict(q, p) for q, p in rows]}


@router.post("/claim")
def claim(
    body: QuestClaim,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        result = claim_quest(engine, user["user_id"], body.quest_id)
    except QuestClaimError as exc:
        raise HTTPException(400, str(exc))
    return {
        "success": True,
        "quest_id": result.quest_id,
        "xp_awarded": result.xp_awarded,
        "total_xp": result.balance_after,
    }


@router.get("/history")
def history(
    user: Annotated[dict, Depends(get_current_user)],
    limit: int = Query(20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    rows = quest_history(session, user["user_id"], limit=limit)
    return {
        "history": [
            {
                "quest_id": p.quest_id,
                "quest_name": p.quest.name,
                "reward_xp": p.quest.reward_xp,
                "period_start": p.period_start.isoformat(),
                "completed_at": p.completed_at.isoformat() if p.completed_at else None,
                "claimed_at": p.claimed_at.isoformat() if p.claimed_at else None,
            }
            for p in rows
        ]
    }
