"""
nuvia.services.waitlist_service — Pre-launch waitlist
======================================================

Sign-ups keyed by email and/or wallet, each with its own ``NUVIA-``
referral code.  A position is the entry's rank by sign-up order; entries
are never deleted, so positions never move.  Referral counts are bumped
with an in-database increment in the same transaction as the sign-up.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nuvia.constants import WAITLIST_CODE_PREFIX, normalize_email, normalize_wallet
from nuvia.database.models import WaitlistEntry, WaitlistStatus
from nuvia.engine.codes import generate_unique_code
from nuvia.errors import WaitlistError

logger = logging.getLogger(__name__)

TOP_REFERRERS = 10
RECENT_POSITIONS = 5


def _taken(session: Session, column, value) -> bool:
    return session.scalar(select(WaitlistEntry.id).where(column == value)) is not None


def _position(session: Session, entry_id: int) -> int:
    return session.scalar(
        select(func.count()).select_from(WaitlistEntry).where(WaitlistEntry.id <= entry_id)
    ) or 0


def _total(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(WaitlistEntry)) or 0


def join_waitlist(
    engine: Engine,
    *,
    email: str | None = None,
    wallet_address: str | None = None,
    referral_code: str | None = None,
    metadata: dict | None = None,
) -> tuple[WaitlistEntry, int]:
    """Add a sign-up; returns the detached entry and its position.

    Raises
    ------
    ValueError
        Neither contact given, or one is malformed.
    WaitlistError
        Email or wallet already registered, or unknown referral code.
    """
    if not email and not wallet_address:
        raise ValueError("Email or wallet address is required")
    email = normalize_email(email) if email else None
    wallet = normalize_wallet(wallet_address) if wallet_address else None
    referred_by = referral_code.strip().upper() if referral_code else None

    with Session(engine, expire_on_commit=False) as session:
        if email and _taken(session, WaitlistEntry.email, email):
            raise WaitlistError("Email already registered in waitlist")
        if wallet and _taken(session, WaitlistEntry.wallet_address, wallet):
            raise WaitlistError("Wallet address already registered in waitlist")
        if referred_by and not _taken(session, WaitlistEntry.referral_code, referred_by):
            raise WaitlistError("Invalid referral code")

        entry = WaitlistEntry(
            email=email,
            wallet_address=wallet,
            referral_code=generate_unique_code(
                lambda c: _taken(session, WaitlistEntry.referral_code, c),
                prefix=WAITLIST_CODE_PREFIX,
            ),
            referred_by=referred_by,
            status=WaitlistStatus.PENDING.value,
            metadata_=metadata or {},
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(entry)
                session.flush()
        except IntegrityError as exc:
            raise WaitlistError("Email or wallet address already registered in waitlist") from exc

        if referred_by:
            session.execute(
                update(WaitlistEntry)
                .where(WaitlistEntry.referral_code == referred_by)
                .values(referral_count=WaitlistEntry.referral_count + 1)
                .execution_options(synchronize_session=False)
            )
        session.commit()
        position = _position(session, entry.id)

    logger.info(
        "Waitlist entry %d joined at position %d (referred_by=%s)",
        entry.id, position, referred_by,
    )
    return entry, position


def find_entry(session: Session, identifier: str) -> WaitlistEntry | None:
    """Look an entry up by email or wallet address."""
    value = (identifier or "").strip().lower()
    return session.scalar(
        select(WaitlistEntry).where(
            (WaitlistEntry.email == value) | (WaitlistEntry.wallet_address == value)
        )
    )


def get_standing(session: Session, identifier: str) -> dict | None:
    entry = find_entry(session, identifier)
    if entry is None:
        return None
    return {
        "position": _position(session, entry.id),
        "total_waitlist": _total(session),
        "referral_code": entry.referral_code,
        "referrals": entry.referral_count,
        "status": entry.status,
        "joined_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def get_by_code(session: Session, code: str) -> WaitlistEntry | None:
    return session.scalar(
        select(WaitlistEntry).where(WaitlistEntry.referral_code == (code or "").strip().upper())
    )


def get_waitlist_stats(session: Session) -> dict:
    """Totals per status, top referrers and the newest positions.

    Contact details are left out; the view is public.
    """
    total = _total(session)
    per_status = dict(session.execute(
        select(WaitlistEntry.status, func.count()).group_by(WaitlistEntry.status)
    ).all())
    top = session.execute(
        select(WaitlistEntry.referral_code, WaitlistEntry.referral_count)
        .where(WaitlistEntry.referral_count > 0)
        .order_by(WaitlistEntry.referral_count.desc(), WaitlistEntry.id)
        .limit(TOP_REFERRERS)
    ).all()
    total_referrals = session.scalar(
        select(func.coalesce(func.sum(WaitlistEntry.referral_count), 0))
    ) or 0
    return {
        "total": total,
        "pending": per_status.get(WaitlistStatus.PENDING.value, 0),
        "approved": per_status.get(WaitlistStatus.APPROVED.value, 0),
        "total_referrals": int(total_referrals),
        "top_referrers": [
            {"referral_code": code, "referral_count": count} for code, count in top
        ],
        # Positions are ranks by id, so the newest entries hold the highest
        "recent_positions": list(range(total, max(total - RECENT_POSITIONS, 0), -1)),
    }
