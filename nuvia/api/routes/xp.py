"""
nuvia.api.routes.xp — Rules, balances, ledger & event submission
=================================================================
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from nuvia.api.deps import get_award_context, get_current_user, get_engine, get_session
from nuvia.database.engine import run_db
from nuvia.database.models import Event, XPLedger, XPRule
from nuvia.engine.events import EventSubmission
from nuvia.errors import UserNotFoundError
from nuvia.services.ledger_service import count_user_ledger, get_user_ledger, get_xp_summary
from nuvia.services.rule_service import list_rules
from nuvia.services.xp_service import AwardContext, list_user_events, process_event

logger = logging.getLogger(__name__)
router = APIRouter(tags=["xp"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EventSubmit(BaseModel):
    action_type: str = Field(min_length=1, max_length=50)
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, max_length=200)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def rule_dict(r: XPRule) -> dict:
    return {
        "action_type": r.action_type,
        "xp_amount": r.xp_amount,
        "daily_limit": r.daily_limit,
        "cooldown_minutes": r.cooldown_minutes,
        "min_amount": r.min_amount,
        "valid_chains": r.valid_chains or [],
        "valid_protocols": r.valid_protocols or [],
        "is_active": r.is_active,
        "description": r.description,
    }


def _ledger_dict(e: XPLedger) -> dict:
    return {
        "id": e.id,
        "seq": e.seq,
        "delta_xp": e.delta_xp,
        "balance_after": e.balance_after,
        "reason": e.reason,
        "description": e.description,
        "event_id": e.event_id,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def _event_dict(e: Event) -> dict:
    return {
        "id": e.id,
        "action_type": e.action_type,
        "status": e.status,
        "reason_code": e.reason_code,
        "failure_reason": e.failure_reason,
        "xp_awarded": e.xp_awarded,
        "tx_hash": e.tx_hash,
        "chain_id": e.chain_id,
        "metadata": e.metadata_ or {},
        "occurred_at": e.occurred_at.isoformat() if e.occurred_at else None,
    }


# ---------------------------------------------------------------------------
# Rules & balance
# ---------------------------------------------------------------------------
@router.get("/xp/rules")
def get_rules(session: Session = Depends(get_session)):
    """Active XP rules, so clients can show what each action earns."""
    return {"rules": [rule_dict(r) for r in list_rules(session, active_only=True)]}


@router.get("/xp/me")
def get_my_xp(
    user: Annotated[dict, Depends(get_current_user)],
    session: Session = Depends(get_session),
):
    try:
        summary = get_xp_summary(session, user["user_id"])
    except UserNotFoundError:
        raise HTTPException(404, "User not found")
    return {
        "total_xp": summary["total_xp"],
        "breakdown": summary["breakdown"],
        "recent": [_ledger_dict(e) for e in summary["recent"]],
    }


@router.get("/xp/ledger")
def get_my_ledger(
    user: Annotated[dict, Depends(get_current_user)],
    reason: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Paginated ledger, newest first."""
    entries = get_user_ledger(
        session, user["user_id"], reason=reason,
        limit=page_size, skip=(page - 1) * page_size,
    )
    return {
        "total": count_user_ledger(session, user["user_id"], reason=reason),
        "page": page,
        "page_size": page_size,
        "entries": [_ledger_dict(e) for e in entries],
    }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
@router.post("/events")
async def submit_event(
    body: EventSubmit,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
    ctx: Annotated[AwardContext, Depends(get_award_context)],
):
    """Submit an action.  Policy rejections return 200 with ``success: false``."""
    submission = EventSubmission(
        action_type=body.action_type,
        metadata=body.metadata,
        idempotency_key=body.idempotency_key,
    )
    try:
        result = await run_db(process_event, engine, ctx, user["user_id"], submission)
    except UserNotFoundError:
        raise HTTPException(404, "User not found")

    return {
        "success": result.success,
        "xp_awarded": result.xp_awarded,
        "message": result.message,
        "reason_code": result.reason_code.value,
        "event_id": result.event_id,
        "next_available_at": (
            result.next_available_at.isoformat() if result.next_available_at else None
        ),
        "retryable": result.retryable,
        "duplicate": result.duplicate,
        "quest_update_failed": result.quest_update_failed,
        "completed_quests": result.completed_quests,
    }


@router.get("/events/me")
def get_my_events(
    user: Annotated[dict, Depends(get_current_user)],
    action_type: str | None = None,
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    events = list_user_events(
        session, user["user_id"], action_type=action_type, status=status,
        limit=page_size, skip=(page - 1) * page_size,
    )
    return {
        "page": page,
        "page_size": page_size,
        "events": [_event_dict(e) for e in events],
    }
