"""
nuvia.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from nuvia.config import NuviaConfig, load_config
from nuvia.database.engine import create_db_engine
from nuvia.services.auth_service import EthSignatureVerifier, SignatureVerifier
from nuvia.services.chain_verifier import JsonRpcVerifier, TransactionVerifier
from nuvia.services.xp_service import AwardContext

_WEAK_SECRETS = frozenset({
    "nuvia-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = int(os.getenv("JWT_EXPIRY_HOURS", "24"))


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> NuviaConfig:
    return load_config()


def get_session(engine: Annotated[Engine, Depends(get_engine)]):
    with Session(engine) as session:
        yield session


def get_verifier(
    cfg: Annotated[NuviaConfig, Depends(get_config)],
) -> TransactionVerifier:
    return JsonRpcVerifier(cfg.chains, timeout=cfg.verifier_timeout_seconds)


def get_award_context(
    cfg: Annotated[NuviaConfig, Depends(get_config)],
    verifier: Annotated[TransactionVerifier, Depends(get_verifier)],
) -> AwardContext:
    return AwardContext.from_config(cfg, verifier)


def get_signature_verifier() -> SignatureVerifier:
    return EthSignatureVerifier()


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------
def issue_token(user_id: int, wallet_address: str, is_admin: bool) -> str:
    payload = {
        "sub": str(user_id),
        "wallet": wallet_address,
        "is_admin": bool(is_admin),
        "exp": datetime.now(UTC) + timedelta(hours=JWT_EXPIRY_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the bearer JWT and return its payload with an int ``user_id``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        payload["user_id"] = int(payload["sub"])
    except (InvalidTokenError, KeyError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return payload


def get_current_admin(user: Annotated[dict, Depends(get_current_user)]) -> dict:
    """Like :func:`get_current_user` but 403 unless ``is_admin``."""
    if not user.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user
