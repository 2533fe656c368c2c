"""
nuvia.services.admin_service — Admin Mutation Service Layer
============================================================

Every admin write follows the same pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSONB
  5. Commit

XP adjustments go through the ledger like any other award; the audit row
records the resulting entry.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nuvia.config import ReferralConfig
from nuvia.constants import utcnow
from nuvia.database.models import (
    AdminLog,
    LedgerReason,
    Quest,
    QuestCadence,
    QuestRuleType,
    User,
    WaitlistEntry,
    WaitlistStatus,
    XPLedger,
    XPRule,
)
from nuvia.engine.rules import parse_amount
from nuvia.errors import AdminValidationError
from nuvia.services import referral_service
from nuvia.services.ledger_service import append_entry
from nuvia.services.rule_service import get_rule, normalize_action_type

logger = logging.getLogger(__name__)

_ADJUSTMENT_REASONS = (LedgerReason.ADMIN_ADJUSTMENT, LedgerReason.PENALTY)


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------
def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key if col.key != "metadata" else "metadata_", None)
        if isinstance(val, datetime):
            val = val.isoformat()
        elif isinstance(val, Decimal):
            val = str(val)
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    ip_address: str | None = None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        ip_address=ip_address,
        reason=reason,
    ))


def _audited_create(
    engine: Engine,
    row: Any,
    *,
    table_name: str,
    actor_id: int,
    ip_address: str | None = None,
) -> Any:
    """Audited CREATE: add → flush → log → commit → return detached row."""
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise AdminValidationError(f"{table_name}: row already exists") from exc
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="CREATE",
            target_table=table_name,
            target_id=str(row.id),
            before=None,
            after=_row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        session.expunge(row)
        return row


def _audited_update(
    engine: Engine,
    model_cls: type,
    pk: int,
    *,
    table_name: str,
    actor_id: int,
    frozen_keys: tuple[str, ...] = ("id",),
    ip_address: str | None = None,
    **kwargs: Any,
) -> Any | None:
    """Audited UPDATE: get → before → apply kwargs → log → commit.

    Returns the updated (expunged) object, or ``None`` if not found.
    """
    with Session(engine, expire_on_commit=False) as session:
        obj = session.get(model_cls, pk)
        if obj is None:
            return None
        before = _row_to_dict(obj)
        for key, value in kwargs.items():
            if hasattr(obj, key) and key not in frozen_keys:
                setattr(obj, key, value)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="UPDATE",
            target_table=table_name,
            target_id=str(obj.id),
            before=before,
            after=_row_to_dict(obj),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(obj)
        session.expunge(obj)
        return obj


# ---------------------------------------------------------------------------
# XP rules
# ---------------------------------------------------------------------------
def _check_rule_fields(fields: dict) -> None:
    if "xp_amount" in fields and fields["xp_amount"] is not None and fields["xp_amount"] < 0:
        raise AdminValidationError("xp_amount must be >= 0")
    if fields.get("cooldown_minutes") is not None and fields["cooldown_minutes"] < 0:
        raise AdminValidationError("cooldown_minutes must be >= 0")
    if fields.get("daily_limit") is not None and fields["daily_limit"] < 0:
        raise AdminValidationError("daily_limit must be >= 0")
    min_amount = fields.get("min_amount")
    if min_amount not in (None, "") and parse_amount(min_amount) is None:
        raise AdminValidationError(f"min_amount is not a decimal number: {min_amount!r}")


def create_rule(
    engine: Engine,
    *,
    action_type: str,
    xp_amount: int,
    actor_id: int,
    daily_limit: int | None = None,
    cooldown_minutes: int = 0,
    min_amount: str | None = None,
    valid_chains: list[int] | None = None,
    valid_protocols: list[str] | None = None,
    description: str = "",
    is_active: bool = True,
) -> XPRule:
    """Create the rule for a new action type (stored lowercase)."""
    action_type = normalize_action_type(action_type)
    if not action_type:
        raise AdminValidationError("action_type is required")
    fields = {
        "xp_amount": xp_amount,
        "daily_limit": daily_limit,
        "cooldown_minutes": cooldown_minutes,
        "min_amount": min_amount,
    }
    _check_rule_fields(fields)
    return _audited_create(
        engine,
        XPRule(
            action_type=action_type,
            xp_amount=xp_amount,
            daily_limit=daily_limit,
            cooldown_minutes=cooldown_minutes or 0,
            min_amount=str(min_amount) if min_amount not in (None, "") else None,
            valid_chains=[int(c) for c in (valid_chains or [])],
            valid_protocols=list(valid_protocols or []),
            description=description,
            is_active=is_active,
        ),
        table_name="xp_rules",
        actor_id=actor_id,
    )


def update_rule(engine: Engine, *, action_type: str, actor_id: int, **changes: Any) -> XPRule | None:
    """Update a rule in place; ``action_type`` itself is frozen."""
    _check_rule_fields(changes)
    if "min_amount" in changes:
        value = changes["min_amount"]
        changes["min_amount"] = str(value) if value not in (None, "") else None
    if changes.get("valid_chains") is not None:
        changes["valid_chains"] = [int(c) for c in changes["valid_chains"]]
    with Session(engine) as session:
        rule = get_rule(session, action_type)
        rule_id = rule.id if rule else None
    if rule_id is None:
        return None
    return _audited_update(
        engine, XPRule, rule_id,
        table_name="xp_rules", actor_id=actor_id,
        frozen_keys=("id", "action_type", "created_at"),
        **changes,
    )


def deactivate_rule(engine: Engine, *, action_type: str, actor_id: int) -> XPRule | None:
    """Soft delete: the rule row stays for audit, ``is_active`` goes false."""
    return update_rule(engine, action_type=action_type, actor_id=actor_id, is_active=False)


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------
def create_quest(
    engine: Engine,
    *,
    name: str,
    cadence: str,
    event_type: str,
    target_count: int,
    reward_xp: int,
    actor_id: int,
    description: str = "",
    is_active: bool = True,
) -> Quest:
    try:
        cadence = QuestCadence(cadence).value
    except ValueError as exc:
        raise AdminValidationError(f"Unknown cadence: {cadence!r}") from exc
    if target_count <= 0:
        raise AdminValidationError("target_count must be > 0")
    if reward_xp < 0:
        raise AdminValidationError("reward_xp must be >= 0")
    return _audited_create(
        engine,
        Quest(
            name=name,
            description=description,
            cadence=cadence,
            rule_type=QuestRuleType.EVENT_COUNT.value,
            event_type=normalize_action_type(event_type),
            target_count=target_count,
            reward_xp=reward_xp,
            is_active=is_active,
        ),
        table_name="quests",
        actor_id=actor_id,
    )


def update_quest(engine: Engine, *, quest_id: int, actor_id: int, **changes: Any) -> Quest | None:
    if "cadence" in changes and changes["cadence"] is not None:
        try:
            changes["cadence"] = QuestCadence(changes["cadence"]).value
        except ValueError as exc:
            raise AdminValidationError(f"Unknown cadence: {changes['cadence']!r}") from exc
    if changes.get("target_count") is not None and changes["target_count"] <= 0:
        raise AdminValidationError("target_count must be > 0")
    if changes.get("reward_xp") is not None and changes["reward_xp"] < 0:
        raise AdminValidationError("reward_xp must be >= 0")
    if changes.get("event_type"):
        changes["event_type"] = normalize_action_type(changes["event_type"])
    return _audited_update(
        engine, Quest, quest_id,
        table_name="quests", actor_id=actor_id,
        frozen_keys=("id", "rule_type", "created_at"),
        **changes,
    )


# ---------------------------------------------------------------------------
# XP adjustments
# ---------------------------------------------------------------------------
def adjust_xp(
    engine: Engine,
    *,
    user_id: int,
    delta_xp: int,
    actor_id: int,
    reason: str = LedgerReason.ADMIN_ADJUSTMENT.value,
    note: str = "",
) -> XPLedger:
    """Manual adjustment or penalty through the normal ledger append.

    Raises ``InsufficientBalanceError`` when a negative delta would drive
    the balance below zero; nothing is written in that case.
    """
    try:
        reason = LedgerReason(reason)
    except ValueError as exc:
        raise AdminValidationError(f"Unknown ledger reason: {reason!r}") from exc
    if reason not in _ADJUSTMENT_REASONS:
        raise AdminValidationError(f"Reason must be one of: {', '.join(_ADJUSTMENT_REASONS)}")
    if delta_xp == 0:
        raise AdminValidationError("delta_xp must be non-zero")

    with Session(engine, expire_on_commit=False) as session:
        entry = append_entry(
            session, user_id, delta_xp, reason,
            description=note or f"{reason.value} by admin {actor_id}",
            metadata={"admin_id": actor_id},
        )
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="XP_ADJUST",
            target_table="users",
            target_id=str(user_id),
            before={"total_xp": entry.balance_after - delta_xp},
            after={"total_xp": entry.balance_after, "ledger_seq": entry.seq},
            reason=note or None,
        )
        session.commit()
    logger.info(
        "Admin %d adjusted user %d by %+d XP (%s)", actor_id, user_id, delta_xp, reason.value
    )
    return entry


# ---------------------------------------------------------------------------
# Referral moderation
# ---------------------------------------------------------------------------
def reject_referral(engine: Engine, *, referral_id: int, actor_id: int, reason: str) -> None:
    referral_service.reject_referral(engine, referral_id, reason)
    with Session(engine) as session:
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="REFERRAL_REJECT",
            target_table="referrals",
            target_id=str(referral_id),
            before=None,
            after={"status": "rejected"},
            reason=reason,
        )
        session.commit()


def reward_referral(
    engine: Engine, *, referral_id: int, actor_id: int, referral_cfg: ReferralConfig
) -> bool:
    paid = referral_service.distribute_rewards(engine, referral_id, referral_cfg)
    if paid:
        with Session(engine) as session:
            _log_admin_action(
                session,
                actor_id=actor_id,
                action_type="REFERRAL_REWARD",
                target_table="referrals",
                target_id=str(referral_id),
                before={"status": "verified"},
                after={"status": "rewarded"},
            )
            session.commit()
    return paid


# ---------------------------------------------------------------------------
# User flags & waitlist
# ---------------------------------------------------------------------------
def clear_user_flags(engine: Engine, *, user_id: int, actor_id: int) -> User | None:
    return _audited_update(
        engine, User, user_id,
        table_name="users", actor_id=actor_id,
        is_suspicious=False, suspicious_reasons=[],
    )


def approve_waitlist_entry(
    engine: Engine, *, entry_id: int, actor_id: int, now: datetime | None = None
) -> WaitlistEntry | None:
    """Move a pending waitlist entry to ``approved``; ``None`` if missing."""
    with Session(engine, expire_on_commit=False) as session:
        entry = session.get(WaitlistEntry, entry_id)
        if entry is None:
            return None
        if entry.status != WaitlistStatus.PENDING.value:
            raise AdminValidationError(f"Waitlist entry {entry_id} is already {entry.status}")
        before = _row_to_dict(entry)
        entry.status = WaitlistStatus.APPROVED.value
        entry.approved_at = now or utcnow()
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type="WAITLIST_APPROVE",
            target_table="waitlist",
            target_id=str(entry.id),
            before=before,
            after=_row_to_dict(entry),
        )
        session.commit()
    logger.info("Admin %d approved waitlist entry %d", actor_id, entry_id)
    return entry
