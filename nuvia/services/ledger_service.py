"""
nuvia.services.ledger_service — Append-only XP ledger
======================================================

The ledger is the single source of truth for a user's XP.  ``users.total_xp``
is a cached projection that only :func:`append_entry` writes.

Appending is one atomic unit inside the caller's transaction:

1. ``UPDATE users SET total_xp = total_xp + :delta, ledger_seq = ledger_seq + 1
   WHERE id = :uid AND total_xp + :delta >= 0 RETURNING total_xp, ledger_seq``
2. ``INSERT INTO xp_ledger (user_id, seq, delta_xp, balance_after, …)``

The UPDATE takes the row lock, so concurrent appends for the same user
serialise on it while appends for different users never contend.  The
returned ``(total_xp, ledger_seq)`` pair is the new entry's
``balance_after`` and ``seq``; ``UNIQUE(user_id, seq)`` backs the chain.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from nuvia.constants import utcnow
from nuvia.database.models import LedgerReason, User, XPLedger
from nuvia.errors import InsufficientBalanceError, UserNotFoundError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------
def append_entry(
    session: Session,
    user_id: int,
    delta_xp: int,
    reason: str | LedgerReason,
    *,
    event_id: int | None = None,
    description: str = "",
    metadata: dict | None = None,
    now: datetime | None = None,
) -> XPLedger:
    """Append one ledger entry and move the cached balance with it.

    Does not commit; the caller owns the transaction.

    Raises
    ------
    UserNotFoundError
        No user with *user_id*.
    InsufficientBalanceError
        The resulting balance would be negative.  Nothing is written.
    """
    reason = LedgerReason(reason)
    stmt = (
        update(User)
        .where(User.id == user_id, User.total_xp + delta_xp >= 0)
        .values(
            total_xp=User.total_xp + delta_xp,
            ledger_seq=User.ledger_seq + 1,
        )
        .returning(User.total_xp, User.ledger_seq)
        .execution_options(synchronize_session=False)
    )
    row = session.execute(stmt).one_or_none()
    if row is None:
        if session.get(User, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")
        raise InsufficientBalanceError(user_id, delta_xp)

    balance_after, seq = row

    # Loaded instances must not keep serving the pre-update balance
    cached = session.identity_map.get(Session.identity_key(User, user_id))
    if cached is not None:
        session.expire(cached, ["total_xp", "ledger_seq"])

    entry = XPLedger(
        user_id=user_id,
        event_id=event_id,
        seq=seq,
        delta_xp=delta_xp,
        balance_after=balance_after,
        reason=reason.value,
        description=description,
        metadata_=metadata or {},
        created_at=now or utcnow(),
    )
    session.add(entry)
    session.flush()

    logger.debug(
        "Ledger append user=%d seq=%d delta=%+d balance=%d reason=%s",
        user_id, seq, delta_xp, balance_after, reason.value,
    )
    return entry


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------
def get_user_ledger(
    session: Session,
    user_id: int,
    *,
    reason: str | None = None,
    limit: int = 50,
    skip: int = 0,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[XPLedger]:
    """Entries for *user_id*, newest first."""
    stmt = select(XPLedger).where(XPLedger.user_id == user_id)
    if reason:
        stmt = stmt.where(XPLedger.reason == reason)
    if start is not None:
        stmt = stmt.where(XPLedger.created_at >= start)
    if end is not None:
        stmt = stmt.where(XPLedger.created_at <= end)
    stmt = stmt.order_by(XPLedger.seq.desc()).offset(skip).limit(limit)
    return list(session.scalars(stmt).all())


def count_user_ledger(session: Session, user_id: int, *, reason: str | None = None) -> int:
    stmt = select(func.count()).select_from(XPLedger).where(XPLedger.user_id == user_id)
    if reason:
        stmt = stmt.where(XPLedger.reason == reason)
    return session.scalar(stmt) or 0


def calculate_total_xp(session: Session, user_id: int) -> int:
    """SUM(delta_xp) over the user's entries."""
    total = session.scalar(
        select(func.coalesce(func.sum(XPLedger.delta_xp), 0)).where(
            XPLedger.user_id == user_id
        )
    )
    return int(total or 0)


def get_xp_summary(session: Session, user_id: int) -> dict:
    """Total XP plus a per-reason breakdown sorted by total descending."""
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")

    rows = session.execute(
        select(
            XPLedger.reason,
            func.sum(XPLedger.delta_xp).label("total"),
            func.count().label("cnt"),
        )
        .where(XPLedger.user_id == user_id)
        .group_by(XPLedger.reason)
    ).all()
    breakdown = sorted(
        ({"reason": r.reason, "total": int(r.total or 0), "count": int(r.cnt)} for r in rows),
        key=lambda item: (-item["total"], item["reason"]),
    )
    recent = get_user_ledger(session, user_id, limit=10)
    return {
        "total_xp": user.total_xp,
        "breakdown": breakdown,
        "recent": recent,
    }


def find_chain_breaks(session: Session, user_id: int) -> list[str]:
    """Walk the user's entries in order and report any inconsistency.

    Checks that ``seq`` is gap-free from 1, that each ``balance_after``
    equals the running sum, and that no balance is negative.
    """
    problems: list[str] = []
    running = 0
    expected_seq = 1
    entries = session.scalars(
        select(XPLedger).where(XPLedger.user_id == user_id).order_by(XPLedger.seq)
    ).all()
    for entry in entries:
        running += entry.delta_xp
        if entry.seq != expected_seq:
            problems.append(f"seq {entry.seq}: expected {expected_seq}")
        if entry.balance_after != running:
            problems.append(
                f"seq {entry.seq}: balance_after {entry.balance_after} != running sum {running}"
            )
        if entry.balance_after < 0:
            problems.append(f"seq {entry.seq}: negative balance {entry.balance_after}")
        expected_seq = entry.seq + 1
    return problems
