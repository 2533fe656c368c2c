"""
nuvia.services.referral_service — Referral orchestration
=========================================================

Storage side of the referral state machine in
:mod:`nuvia.engine.referral`.  Transitions that pay XP are guarded by a
conditional UPDATE on ``status`` so a referral can be rewarded at most
once no matter how many callers race to reward it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Engine, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nuvia.config import ReferralConfig
from nuvia.constants import utcnow
from nuvia.database.models import (
    Event,
    EventStatus,
    LedgerReason,
    Referral,
    ReferralStatus,
    User,
)
from nuvia.engine.referral import (
    Criteria,
    ReferralQueries,
    can_transition,
    evaluate_criteria,
)
from nuvia.errors import (
    AlreadyReferredError,
    InvalidReferralCodeError,
    ReferralStateError,
    SelfReferralError,
    UserNotFoundError,
)
from nuvia.services.ledger_service import append_entry
from nuvia.services.user_service import get_user_by_referral_code

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (ReferralStatus.PENDING.value, ReferralStatus.VERIFIED.value)


# ---------------------------------------------------------------------------
# DB-backed criteria queries
# ---------------------------------------------------------------------------
class DbReferralQueries:
    """:class:`~nuvia.engine.referral.ReferralQueries` over a session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def has_logged_in(self, user_id: int) -> bool:
        return self.session.scalar(
            select(User.first_login_at).where(User.id == user_id)
        ) is not None

    def has_onchain_action(self, user_id: int) -> bool:
        return bool(self.session.scalar(
            select(exists().where(
                Event.user_id == user_id,
                Event.status == EventStatus.PROCESSED.value,
                Event.tx_hash.is_not(None),
            ))
        ))

    def current_xp(self, user_id: int) -> int:
        return int(self.session.scalar(
            select(User.total_xp).where(User.id == user_id)
        ) or 0)


QueriesFactory = Callable[[Session], ReferralQueries]


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def create_referral(
    session: Session,
    inviter: User,
    invitee: User,
    *,
    min_xp_threshold: int,
    metadata: dict | None = None,
) -> Referral:
    """Insert a pending referral; the caller commits.

    Raises
    ------
    SelfReferralError
        *inviter* and *invitee* are the same user.
    AlreadyReferredError
        *invitee* already has a referral row.
    """
    if inviter.id == invitee.id:
        raise SelfReferralError("You cannot use your own referral code")

    referral = Referral(
        inviter_user_id=inviter.id,
        invitee_user_id=invitee.id,
        referral_code=inviter.referral_code,
        status=ReferralStatus.PENDING.value,
        min_xp_threshold=min_xp_threshold,
        metadata_=metadata or {},
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(referral)
            session.flush()
    except IntegrityError as exc:
        raise AlreadyReferredError(
            f"User {invitee.id} has already been referred"
        ) from exc

    logger.info(
        "Referral %d created: inviter=%d invitee=%d",
        referral.id, inviter.id, invitee.id,
    )
    return referral


def apply_referral_code(
    engine: Engine,
    invitee_id: int,
    code: str,
    referral_cfg: ReferralConfig,
    *,
    metadata: dict | None = None,
) -> Referral:
    """Attach *invitee_id* to the owner of *code*."""
    with Session(engine, expire_on_commit=False) as session:
        invitee = session.get(User, invitee_id)
        if invitee is None:
            raise UserNotFoundError(f"User {invitee_id} not found")
        inviter = get_user_by_referral_code(session, code)
        if inviter is None:
            raise InvalidReferralCodeError(f"Invalid referral code: {code}")
        referral = create_referral(
            session, inviter, invitee,
            min_xp_threshold=referral_cfg.min_xp_threshold,
            metadata=metadata,
        )
        session.commit()
        return referral


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def _current_status(session: Session, referral_id: int) -> str:
    status = session.scalar(select(Referral.status).where(Referral.id == referral_id))
    if status is None:
        raise ReferralStateError(f"Referral {referral_id} not found")
    return status


def check_verification(
    engine: Engine,
    referral_id: int,
    *,
    queries_factory: QueriesFactory = DbReferralQueries,
    now: datetime | None = None,
) -> str:
    """Re-evaluate a pending referral's criteria; returns the new status.

    Non-pending referrals are returned untouched.
    """
    now = now or utcnow()
    with Session(engine) as session:
        referral = session.get(Referral, referral_id, with_for_update=True)
        if referral is None:
            raise ReferralStateError(f"Referral {referral_id} not found")
        if not can_transition(referral.status, ReferralStatus.VERIFIED):
            return referral.status

        previous = Criteria(
            first_login=referral.first_login,
            first_onchain_action=referral.first_onchain_action,
            min_xp_reached=referral.min_xp_reached,
        )
        criteria = evaluate_criteria(
            previous,
            referral.invitee_user_id,
            referral.min_xp_threshold,
            queries_factory(session),
        )
        referral.first_login = criteria.first_login
        referral.first_onchain_action = criteria.first_onchain_action
        referral.min_xp_reached = criteria.min_xp_reached
        if criteria.all_met:
            referral.status = ReferralStatus.VERIFIED.value
            referral.verified_at = now
            logger.info("Referral %d verified", referral.id)
        status = referral.status
        session.commit()
        return status


def distribute_rewards(
    engine: Engine,
    referral_id: int,
    referral_cfg: ReferralConfig,
    *,
    now: datetime | None = None,
) -> bool:
    """Pay both parties of a verified referral exactly once.

    Returns True if this call paid, False if the referral was already
    rewarded.

    Raises
    ------
    ReferralStateError
        The referral is missing, pending or rejected.
    """
    now = now or utcnow()
    with Session(engine) as session:
        current = _current_status(session, referral_id)
        if current == ReferralStatus.REWARDED.value:
            return False
        if not can_transition(current, ReferralStatus.REWARDED):
            raise ReferralStateError(
                f"Referral {referral_id} cannot be rewarded from status {current!r}"
            )

        # Compare-and-set: a concurrent payer leaves rowcount at 0
        flipped = session.execute(
            update(Referral)
            .where(
                Referral.id == referral_id,
                Referral.status == current,
            )
            .values(
                status=ReferralStatus.REWARDED.value,
                rewarded_at=now,
                inviter_xp_rewarded=referral_cfg.inviter_xp,
                invitee_xp_rewarded=referral_cfg.invitee_xp,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if flipped != 1:
            session.rollback()
            if _current_status(session, referral_id) == ReferralStatus.REWARDED.value:
                return False
            raise ReferralStateError(
                f"Referral {referral_id} changed status while being rewarded"
            )

        referral = session.get(Referral, referral_id)
        if referral_cfg.inviter_xp > 0:
            append_entry(
                session,
                referral.inviter_user_id,
                referral_cfg.inviter_xp,
                LedgerReason.REFERRAL_REWARD_INVITER,
                description="Referral reward (inviter)",
                metadata={"referral_id": referral.id},
                now=now,
            )
        if referral_cfg.invitee_xp > 0:
            append_entry(
                session,
                referral.invitee_user_id,
                referral_cfg.invitee_xp,
                LedgerReason.REFERRAL_REWARD_INVITEE,
                description="Referral reward (invitee)",
                metadata={"referral_id": referral.id},
                now=now,
            )
        session.commit()

    logger.info(
        "Referral %d rewarded: inviter +%d, invitee +%d",
        referral_id, referral_cfg.inviter_xp, referral_cfg.invitee_xp,
    )
    return True


def reject_referral(
    engine: Engine,
    referral_id: int,
    reason: str,
    *,
    now: datetime | None = None,
) -> None:
    """Move a pending or verified referral to ``rejected``.

    Raises
    ------
    ReferralStateError
        The referral is missing or already terminal.
    """
    now = now or utcnow()
    with Session(engine) as session:
        current = _current_status(session, referral_id)
        if not can_transition(current, ReferralStatus.REJECTED):
            raise ReferralStateError(
                f"Referral {referral_id} cannot be rejected from status {current!r}"
            )
        changed = session.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.status == current)
            .values(
                status=ReferralStatus.REJECTED.value,
                rejected_at=now,
                rejection_reason=reason,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            session.rollback()
            raise ReferralStateError(
                f"Referral {referral_id} changed status while being rejected"
            )
        session.commit()
    logger.info("Referral %d rejected: %s", referral_id, reason)


def reevaluate_for_invitee(
    engine: Engine,
    invitee_id: int,
    referral_cfg: ReferralConfig,
    *,
    queries_factory: QueriesFactory = DbReferralQueries,
    now: datetime | None = None,
) -> str | None:
    """Lazy re-evaluation after anything that may affect *invitee_id*.

    Verifies a pending referral whose criteria are now met and pays out a
    verified one.  Returns the resulting status, or ``None`` when the
    user was never referred or the referral is already terminal.
    """
    with Session(engine) as session:
        row = session.execute(
            select(Referral.id, Referral.status).where(
                Referral.invitee_user_id == invitee_id,
                Referral.status.in_(_OPEN_STATUSES),
            )
        ).one_or_none()
    if row is None:
        return None

    referral_id, status = row
    if status == ReferralStatus.PENDING.value:
        status = check_verification(
            engine, referral_id, queries_factory=queries_factory, now=now
        )
    if status == ReferralStatus.VERIFIED.value:
        distribute_rewards(engine, referral_id, referral_cfg, now=now)
        status = ReferralStatus.REWARDED.value
    return status


# ---------------------------------------------------------------------------
# Read views
# ---------------------------------------------------------------------------
def get_referral_for_invitee(session: Session, invitee_id: int) -> Referral | None:
    return session.scalar(select(Referral).where(Referral.invitee_user_id == invitee_id))


def list_referrals(
    session: Session,
    inviter_id: int,
    *,
    status: str | None = None,
    limit: int = 20,
    skip: int = 0,
) -> list[Referral]:
    stmt = select(Referral).where(Referral.inviter_user_id == inviter_id)
    if status:
        stmt = stmt.where(Referral.status == status)
    stmt = stmt.order_by(Referral.created_at.desc(), Referral.id.desc()).offset(skip).limit(limit)
    return list(session.scalars(stmt).all())


def get_referral_stats(session: Session, inviter_id: int) -> dict:
    """Counts per status plus XP earned as inviter."""
    rows = session.execute(
        select(Referral.status, func.count().label("cnt"))
        .where(Referral.inviter_user_id == inviter_id)
        .group_by(Referral.status)
    ).all()
    counts = {status.value: 0 for status in ReferralStatus}
    for row in rows:
        counts[row.status] = int(row.cnt)
    earned = session.scalar(
        select(func.coalesce(func.sum(Referral.inviter_xp_rewarded), 0)).where(
            Referral.inviter_user_id == inviter_id,
            Referral.status == ReferralStatus.REWARDED.value,
        )
    )
    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "xp_earned": int(earned or 0),
    }
