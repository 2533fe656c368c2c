"""
nuvia.api.routes.referrals — Apply codes, stats & re-evaluation
================================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from nuvia.api.deps import get_config, get_current_user, get_engine, get_session
from nuvia.config import NuviaConfig
from nuvia.database.models import Referral
from nuvia.errors import (
    AlreadyReferredError,
    InvalidReferralCodeError,
    SelfReferralError,
    UserNotFoundError,
)
from nuvia.services.referral_service import (
    apply_referral_code,
    get_referral_for_invitee,
    get_referral_stats,
    list_referrals,
    reevaluate_for_invitee,
)
from nuvia.services.user_service import require_user

router = APIRouter(prefix="/referrals", tags=["referrals"])


class ReferralApply(BaseModel):
    code: str


def _referral_dict(r: Referral) -> dict:
    return {
        "id": r.id,
        "inviter_user_id": r.inviter_user_id,
        "invitee_user_id": r.invitee_user_id,
        "referral_code": r.referral_code,
        "status": r.status,
        "criteria": {
            "first_login": r.first_login,
            "first_onchain_action": r.first_onchain_action,
            "min_xp_reached": r.min_xp_reached,
            "min_xp_threshold": r.min_xp_threshold,
        },
        "inviter_xp_rewarded": r.inviter_xp_rewarded,
        "invitee_xp_rewarded": r.invitee_xp_rewarded,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "verified_at": r.verified_at.isoformat() if r.verified_at else None,
        "rewarded_at": r.rewarded_at.isoformat() if r.rewarded_at else None,
    }


@router.post("/apply")
def apply_code(
    body: ReferralApply,
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
    cfg: Annotated[NuviaConfig, Depends(get_config)],
):
    try:
        referral = apply_referral_code(engine, user["user_id"], body.code, cfg.referral)
    except InvalidReferralCodeError:
        raise HTTPException(404, "Invalid referral code")
    except SelfReferralError as exc:
        raise HTTPException(400, str(exc))
    except AlreadyReferredError:
        raise HTTPException(409, "You have already been referred")
    except UserNotFoundError:
        raise HTTPException(404, "User not found")
    return {"success": True, "referral": _referral_dict(referral)}


@router.get("/me")
def my_referrals(
    user: Annotated[dict, Depends(get_current_user)],
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Own referral code, inviter stats and the invitee-side referral."""
    try:
        me = require_user(session, user["user_id"])
    except UserNotFoundError:
        raise HTTPException(404, "User not found")
    invited_by = get_referral_for_invitee(session, me.id)
    return {
        "referral_code": me.referral_code,
        "stats": get_referral_stats(session, me.id),
        "referrals": [
            _referral_dict(r)
            for r in list_referrals(
                session, me.id, status=status,
                limit=page_size, skip=(page - 1) * page_size,
            )
        ],
        "referred_by": _referral_dict(invited_by) if invited_by else None,
    }


@router.post("/check")
def check(
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
    cfg: Annotated[NuviaConfig, Depends(get_config)],
):
    """Re-evaluate the caller's referral as invitee (pays out when verified)."""
    status = reevaluate_for_invitee(engine, user["user_id"], cfg.referral)
    return {"status": status}
