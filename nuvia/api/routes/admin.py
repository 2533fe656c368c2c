"""
nuvia.api.routes.admin — Admin endpoints (JWT-protected)
=========================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from nuvia.api.deps import get_config, get_current_admin, get_engine, get_session
from nuvia.api.routes.xp import rule_dict
from nuvia.config import NuviaConfig
from nuvia.database.models import AdminLog, LeaderboardPeriod, Quest
from nuvia.errors import (
    AdminValidationError,
    InsufficientBalanceError,
    ReferralStateError,
    UserNotFoundError,
)
from nuvia.services import admin_service
from nuvia.services.leaderboard_service import generate_snapshot
from nuvia.services.reconciliation_service import reconcile_balances
from nuvia.services.rule_service import list_rules
from nuvia.services.user_service import list_suspicious_users

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RuleCreate(BaseModel):
    action_type: str
    xp_amount: int = Field(ge=0)
    daily_limit: int | None = Field(default=None, ge=0)
    cooldown_minutes: int = Field(default=0, ge=0)
    min_amount: str | None = None
    valid_chains: list[int] = Field(default_factory=list)
    valid_protocols: list[str] = Field(default_factory=list)
    description: str = ""
    is_active: bool = True


class RuleUpdate(BaseModel):
    xp_amount: int | None = Field(default=None, ge=0)
    daily_limit: int | None = Field(default=None, ge=0)
    cooldown_minutes: int | None = Field(default=None, ge=0)
    min_amount: str | None = None
    valid_chains: list[int] | None = None
    valid_protocols: list[str] | None = None
    description: str | None = None
    is_active: bool | None = None


class QuestCreate(BaseModel):
    name: str
    description: str = ""
    cadence: str
    event_type: str
    target_count: int = Field(default=1, gt=0)
    reward_xp: int = Field(default=0, ge=0)
    is_active: bool = True


class QuestUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    cadence: str | None = None
    event_type: str | None = None
    target_count: int | None = Field(default=None, gt=0)
    reward_xp: int | None = Field(default=None, ge=0)
    is_active: bool | None = None


class XPAdjust(BaseModel):
    user_id: int
    delta_xp: int
    reason: str = "admin_adjustment"
    note: str = ""


class ReferralReject(BaseModel):
    reason: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _quest_dict(q: Quest) -> dict:
    return {
        "id": q.id,
        "name": q.name,
        "description": q.description,
        "cadence": q.cadence,
        "rule_type": q.rule_type,
        "event_type": q.event_type,
        "target_count": q.target_count,
        "reward_xp": q.reward_xp,
        "is_active": q.is_active,
    }


# ---------------------------------------------------------------------------
# XP rules
# ---------------------------------------------------------------------------
@router.get("/rules")
def get_rules(
    admin: Annotated[dict, Depends(get_current_admin)],
    session: Session = Depends(get_session),
):
    return {"rules": [rule_dict(r) for r in list_rules(session)]}


@router.post("/rules", status_code=201)
def create_rule(
    body: RuleCreate,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        rule = admin_service.create_rule(engine, actor_id=admin["user_id"], **body.model_dump())
    except AdminValidationError as exc:
        raise HTTPException(400, str(exc))
    return rule_dict(rule)


@router.patch("/rules/{action_type}")
def update_rule(
    action_type: str,
    body: RuleUpdate,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        rule = admin_service.update_rule(
            engine, action_type=action_type, actor_id=admin["user_id"],
            **body.model_dump(exclude_unset=True),
        )
    except AdminValidationError as exc:
        raise HTTPException(400, str(exc))
    if rule is None:
        raise HTTPException(404, "Rule not found")
    return rule_dict(rule)


@router.delete("/rules/{action_type}")
def deactivate_rule(
    action_type: str,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    rule = admin_service.deactivate_rule(engine, action_type=action_type, actor_id=admin["user_id"])
    if rule is None:
        raise HTTPException(404, "Rule not found")
    return rule_dict(rule)


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------
@router.post("/quests", status_code=201)
def create_quest(
    body: QuestCreate,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        quest = admin_service.create_quest(engine, actor_id=admin["user_id"], **body.model_dump())
    except AdminValidationError as exc:
        raise HTTPException(400, str(exc))
    return _quest_dict(quest)


@router.patch("/quests/{quest_id}")
def update_quest(
    quest_id: int,
    body: QuestUpdate,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        quest = admin_service.update_quest(
            engine, quest_id=quest_id, actor_id=admin["user_id"],
            **body.model_dump(exclude_unset=True),
        )
    except AdminValidationError as exc:
        raise HTTPException(400, str(exc))
    if quest is None:
        raise HTTPException(404, "Quest not found")
    return _quest_dict(quest)


# ---------------------------------------------------------------------------
# XP adjustments
# ---------------------------------------------------------------------------
@router.post("/xp/adjust")
def adjust_xp(
    body: XPAdjust,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        entry = admin_service.adjust_xp(
            engine,
            user_id=body.user_id,
            delta_xp=body.delta_xp,
            actor_id=admin["user_id"],
            reason=body.reason,
            note=body.note,
        )
    except (AdminValidationError, ValueError) as exc:
        raise HTTPException(400, str(exc))
    except UserNotFoundError:
        raise HTTPException(404, "User not found")
    except InsufficientBalanceError as exc:
        raise HTTPException(409, str(exc))
    return {
        "user_id": entry.user_id,
        "seq": entry.seq,
        "delta_xp": entry.delta_xp,
        "balance_after": entry.balance_after,
    }


# ---------------------------------------------------------------------------
# Leaderboard & reconciliation
# ---------------------------------------------------------------------------
@router.post("/leaderboard/generate")
def generate_leaderboard(
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
    period: str = "all-time",
):
    if period not in {p.value for p in LeaderboardPeriod}:
        raise HTTPException(400, f"Unknown period: {period}")
    snapshot = generate_snapshot(engine, period)
    return {
        "snapshot_id": snapshot.id,
        "period": snapshot.period,
        "total_users": snapshot.total_users,
    }


@router.post("/reconcile")
def reconcile(
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
    fix: bool = False,
):
    return reconcile_balances(engine, fix=fix)


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------
@router.post("/referrals/{referral_id}/reject")
def reject_referral(
    referral_id: int,
    body: ReferralReject,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        admin_service.reject_referral(
            engine, referral_id=referral_id, actor_id=admin["user_id"], reason=body.reason
        )
    except ReferralStateError as exc:
        raise HTTPException(409, str(exc))
    return {"success": True, "status": "rejected"}


@router.post("/referrals/{referral_id}/reward")
def reward_referral(
    referral_id: int,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
    cfg: Annotated[NuviaConfig, Depends(get_config)],
):
    try:
        paid = admin_service.reward_referral(
            engine, referral_id=referral_id, actor_id=admin["user_id"],
            referral_cfg=cfg.referral,
        )
    except ReferralStateError as exc:
        raise HTTPException(409, str(exc))
    return {"success": True, "paid": paid, "status": "rewarded"}


# ---------------------------------------------------------------------------
# Suspicious users
# ---------------------------------------------------------------------------
@router.get("/users/suspicious")
def suspicious_users(
    admin: Annotated[dict, Depends(get_current_admin)],
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
):
    return {
        "users": [
            {
                "id": u.id,
                "wallet_address": u.wallet_address,
                "total_xp": u.total_xp,
                "reasons": u.suspicious_reasons or [],
            }
            for u in list_suspicious_users(session, limit=limit)
        ]
    }


@router.post("/users/{user_id}/clear-flags")
def clear_flags(
    user_id: int,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    user = admin_service.clear_user_flags(engine, user_id=user_id, actor_id=admin["user_id"])
    if user is None:
        raise HTTPException(404, "User not found")
    return {"id": user.id, "is_suspicious": user.is_suspicious}


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------
@router.post("/waitlist/{entry_id}/approve")
def approve_waitlist(
    entry_id: int,
    admin: Annotated[dict, Depends(get_current_admin)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        entry = admin_service.approve_waitlist_entry(
            engine, entry_id=entry_id, actor_id=admin["user_id"]
        )
    except AdminValidationError as exc:
        raise HTTPException(409, str(exc))
    if entry is None:
        raise HTTPException(404, "Waitlist entry not found")
    return {"id": entry.id, "status": entry.status}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit-log")
def audit_log(
    admin: Annotated[dict, Depends(get_current_admin)],
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
):
    rows = session.scalars(
        select(AdminLog).order_by(AdminLog.id.desc()).limit(limit)
    ).all()
    return {
        "entries": [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before": r.before_snapshot,
                "after": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ]
    }
