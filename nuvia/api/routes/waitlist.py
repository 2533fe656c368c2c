"""
nuvia.api.routes.waitlist — Public waitlist sign-up & lookups
==============================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from nuvia.api.deps import get_engine, get_session
from nuvia.database.engine import run_db
from nuvia.errors import WaitlistError
from nuvia.services.waitlist_service import (
    get_by_code,
    get_standing,
    get_waitlist_stats,
    join_waitlist,
)

router = APIRouter(prefix="/waitlist", tags=["waitlist"])


class WaitlistJoin(BaseModel):
    email: str | None = Field(default=None, max_length=255)
    wallet_address: str | None = None
    referral_code: str | None = Field(default=None, max_length=16)
    source: str = Field(default="web", max_length=50)


@router.post("/join", status_code=201)
async def join(
    body: WaitlistJoin,
    request: Request,
    engine: Annotated[Engine, Depends(get_engine)],
):
    try:
        entry, position = await run_db(
            join_waitlist,
            engine,
            email=body.email,
            wallet_address=body.wallet_address,
            referral_code=body.referral_code,
            metadata={
                "ip_address": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
                "source": body.source,
            },
        )
    except (ValueError, WaitlistError) as exc:
        raise HTTPException(400, str(exc))
    return {
        "success": True,
        "message": "Successfully joined the waitlist",
        "position": position,
        "referral_code": entry.referral_code,
        "email": entry.email,
        "wallet_address": entry.wallet_address,
    }


@router.get("/position/{identifier}")
def position(identifier: str, session: Session = Depends(get_session)):
    """Standing of the entry registered under an email or wallet."""
    standing = get_standing(session, identifier)
    if standing is None:
        raise HTTPException(404, "No waitlist entry found for this identifier")
    return standing


@router.get("/stats")
def stats(session: Session = Depends(get_session)):
    return get_waitlist_stats(session)


@router.get("/verify/{referral_code}")
def verify_code(referral_code: str, session: Session = Depends(get_session)):
    entry = get_by_code(session, referral_code)
    if entry is None:
        raise HTTPException(404, "Invalid referral code")
    return {
        "valid": True,
        "referral_code": entry.referral_code,
        "referral_count": entry.referral_count,
    }
