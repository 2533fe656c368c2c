"""
nuvia.services.user_service — Wallet-keyed user records
========================================================

Users are created on their first authentication attempt.  The referral
code is assigned here, before the row is flushed, by the pure generator
in :mod:`nuvia.engine.codes`.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nuvia.constants import normalize_wallet
from nuvia.database.models import User
from nuvia.engine.codes import generate_unique_code
from nuvia.errors import UserNotFoundError

logger = logging.getLogger(__name__)


def _referral_code_taken(session: Session, code: str) -> bool:
    return session.scalar(select(User.id).where(User.referral_code == code)) is not None


def get_user_by_wallet(session: Session, wallet: str) -> User | None:
    return session.scalar(
        select(User).where(User.wallet_address == normalize_wallet(wallet))
    )


def get_user_by_referral_code(session: Session, code: str) -> User | None:
    return session.scalar(
        select(User).where(User.referral_code == (code or "").strip().upper())
    )


def require_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


def get_or_create_user(session: Session, wallet: str) -> tuple[User, bool]:
    """Fetch or insert the user for *wallet*.

    Returns ``(user, created)``.  A concurrent insert for the same wallet
    is absorbed by the SAVEPOINT and the winner's row is returned.
    """
    address = normalize_wallet(wallet)
    user = session.scalar(select(User).where(User.wallet_address == address))
    if user is not None:
        return user, False

    code = generate_unique_code(lambda c: _referral_code_taken(session, c))
    user = User(wallet_address=address, referral_code=code)
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(user)
            session.flush()
    except IntegrityError:
        user = session.scalar(select(User).where(User.wallet_address == address))
        if user is None:
            raise
        return user, False

    logger.info("Created user %d for wallet %s", user.id, address)
    return user, True


# ---------------------------------------------------------------------------
# Fraud flags
# ---------------------------------------------------------------------------
def flag_user(engine: Engine, user_id: int, reason: str) -> None:
    """Mark *user_id* suspicious and record *reason* once.

    Flags are informational; nothing is blocked automatically.  Admins
    review them through :func:`list_suspicious_users`.
    """
    with Session(engine) as session:
        user = session.get(User, user_id, with_for_update=True)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        reasons = list(user.suspicious_reasons or [])
        if reason not in reasons:
            reasons.append(reason)
        user.suspicious_reasons = reasons
        user.is_suspicious = True
        session.commit()
    logger.warning("User %d flagged as suspicious: %s", user_id, reason)


def list_suspicious_users(session: Session, *, limit: int = 50, skip: int = 0) -> list[User]:
    return list(session.scalars(
        select(User)
        .where(User.is_suspicious.is_(True))
        .order_by(User.id)
        .offset(skip)
        .limit(limit)
    ).all())
