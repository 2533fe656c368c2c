"""
nuvia.api.auth — Wallet signature login + JWT issuance
=======================================================
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import Engine

from nuvia.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_signature_verifier,
    issue_token,
)
from nuvia.config import NuviaConfig
from nuvia.database.engine import get_session, run_db
from nuvia.errors import AuthError, UserNotFoundError
from nuvia.services.auth_service import SignatureVerifier, issue_nonce, verify_login
from nuvia.services.user_service import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class NonceRequest(BaseModel):
    wallet_address: str


class VerifyRequest(BaseModel):
    wallet_address: str
    signature: str
    nonce: str


@router.post("/nonce")
async def nonce(
    body: NonceRequest,
    engine: Annotated[Engine, Depends(get_engine)],
    cfg: Annotated[NuviaConfig, Depends(get_config)],
):
    """Issue a login challenge; registers the wallet on first contact."""
    try:
        challenge = await run_db(
            issue_nonce, engine, body.wallet_address, ttl_minutes=cfg.nonce_ttl_minutes
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return {
        "wallet_address": challenge.wallet_address,
        "nonce": challenge.nonce,
        "message": challenge.message,
        "expires_at": challenge.expires_at.isoformat(),
    }


@router.post("/verify")
async def verify(
    body: VerifyRequest,
    request: Request,
    engine: Annotated[Engine, Depends(get_engine)],
    cfg: Annotated[NuviaConfig, Depends(get_config)],
    verifier: Annotated[SignatureVerifier, Depends(get_signature_verifier)],
):
    """Check the signed challenge and return a bearer token."""
    try:
        result = await run_db(
            verify_login,
            engine,
            body.wallet_address,
            body.signature,
            body.nonce,
            verifier=verifier,
            referral_cfg=cfg.referral,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except AuthError as exc:
        raise HTTPException(401, str(exc))

    token = issue_token(result.user_id, result.wallet_address, result.is_admin)
    return {
        "token": token,
        "user": {
            "id": result.user_id,
            "wallet_address": result.wallet_address,
            "is_admin": result.is_admin,
            "referral_code": result.referral_code,
            "first_login": result.first_login,
        },
    }


@router.get("/me")
def me(
    user: Annotated[dict, Depends(get_current_user)],
    engine: Annotated[Engine, Depends(get_engine)],
):
    """Return the authenticated user's profile."""
    with get_session(engine) as session:
        try:
            row = require_user(session, user["user_id"])
        except UserNotFoundError:
            raise HTTPException(404, "User not found")
        return {
            "id": row.id,
            "wallet_address": row.wallet_address,
            "referral_code": row.referral_code,
            "total_xp": row.total_xp,
            "is_admin": row.is_admin,
            "first_login_at": row.first_login_at.isoformat() if row.first_login_at else None,
            "last_login_at": row.last_login_at.isoformat() if row.last_login_at else None,
        }
