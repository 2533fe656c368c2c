"""
nuvia.services.xp_service — Event-to-XP award pipeline
=======================================================

One submission moves through these phases; the first failure marks the
event ``failed`` with a reason code and stops:

  A. record    — INSERT the event; UNIQUE(user_id, dedup_key) and the
                 global UNIQUE(tx_ref) turn a repeat into the
                 ``duplicate`` outcome at no cost.  A transaction whose
                 earlier attempt hit a verifier outage is reopened
                 instead
  B. policy    — active rule → allow-lists / min amount → cooldown
                 → daily limit
  C. verify    — on-chain receipt check (only when metadata carries a
                 tx hash and chain id); no DB transaction is held open
                 across the network call
  D. award     — one transaction: lock the user row, re-check cooldown
                 and limit, append to the ledger, mark ``processed``
  E. fan-out   — quest progress and referral re-evaluation, best effort;
                 failures are logged and reported as
                 ``quest_update_failed`` but never unwind phase D

Invariant violations (negative balance, missing user) propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nuvia.config import NuviaConfig, ReferralConfig
from nuvia.constants import as_utc, utcnow
from nuvia.database.models import (
    Event,
    EventStatus,
    LedgerReason,
    User,
    XPLedger,
)
from nuvia.engine.events import EventSubmission, derive_dedup_key, tx_reference
from nuvia.engine.periods import day_bounds
from nuvia.engine.rules import (
    ReasonCode,
    RuleLike,
    check_cooldown,
    check_daily_limit,
    validate_submission,
)
from nuvia.errors import UserNotFoundError
from nuvia.services.chain_verifier import TransactionVerifier, VerificationOutcome
from nuvia.services.contract_registry import ContractRegistry
from nuvia.services.ledger_service import append_entry
from nuvia.services.quest_service import advance_quests_for_event
from nuvia.services.referral_service import reevaluate_for_invitee
from nuvia.services.rule_service import get_active_rule, normalize_action_type
from nuvia.services.user_service import flag_user

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "Event already processed (duplicate)"
NO_RULE_MESSAGE = "Event recorded but no XP rule configured"


# ---------------------------------------------------------------------------
# Collaborators & results
# ---------------------------------------------------------------------------
@dataclass
class AwardContext:
    """Collaborators injected into the pipeline at startup."""

    registry: ContractRegistry
    verifier: TransactionVerifier
    referral: ReferralConfig = field(default_factory=ReferralConfig)
    require_sender_match: bool = True

    @classmethod
    def from_config(cls, cfg: NuviaConfig, verifier: TransactionVerifier) -> AwardContext:
        return cls(
            registry=ContractRegistry.from_config(cfg),
            verifier=verifier,
            referral=cfg.referral,
            require_sender_match=cfg.require_sender_match,
        )


@dataclass
class AwardResult:
    """Outcome of one submission."""

    success: bool
    reason_code: ReasonCode
    message: str
    xp_awarded: int = 0
    event_id: int | None = None
    next_available_at: datetime | None = None
    retryable: bool = False
    quest_update_failed: bool = False
    completed_quests: list[int] = field(default_factory=list)
    balance_after: int | None = None

    @property
    def duplicate(self) -> bool:
        return self.reason_code == ReasonCode.DUPLICATE


@dataclass(frozen=True, slots=True)
class _RuleSnapshot:
    """Detached copy of the rule read in phase B."""

    action_type: str
    xp_amount: int
    is_active: bool
    daily_limit: int | None
    cooldown_minutes: int | None
    min_amount: str | None
    valid_chains: list | None
    valid_protocols: list | None

    @classmethod
    def of(cls, rule: RuleLike) -> _RuleSnapshot:
        return cls(
            action_type=rule.action_type,
            xp_amount=rule.xp_amount,
            is_active=rule.is_active,
            daily_limit=rule.daily_limit,
            cooldown_minutes=rule.cooldown_minutes,
            min_amount=rule.min_amount,
            valid_chains=list(rule.valid_chains or []),
            valid_protocols=list(rule.valid_protocols or []),
        )


# ---------------------------------------------------------------------------
# History queries used by the cooldown / limit checks
# ---------------------------------------------------------------------------
def last_processed_at(session: Session, user_id: int, action_type: str) -> datetime | None:
    """``occurred_at`` of the newest processed event of this type."""
    return as_utc(session.scalar(
        select(func.max(Event.occurred_at)).where(
            Event.user_id == user_id,
            Event.action_type == action_type,
            Event.status == EventStatus.PROCESSED.value,
        )
    ))


def processed_count_today(
    session: Session, user_id: int, action_type: str, now: datetime
) -> int:
    start, end = day_bounds(now)
    return session.scalar(
        select(func.count()).select_from(Event).where(
            Event.user_id == user_id,
            Event.action_type == action_type,
            Event.status == EventStatus.PROCESSED.value,
            Event.occurred_at >= start,
            Event.occurred_at <= end,
        )
    ) or 0


def _check_frequency(
    session: Session, rule: RuleLike, user_id: int, now: datetime, event_id: int
) -> AwardResult | None:
    """Cooldown then daily limit; ``None`` when both pass."""
    cooldown = check_cooldown(rule, last_processed_at(session, user_id, rule.action_type), now)
    if not cooldown.allowed:
        return AwardResult(
            success=False,
            reason_code=ReasonCode.COOLDOWN_ACTIVE,
            message=cooldown.message,
            event_id=event_id,
            next_available_at=cooldown.next_available_at,
        )

    limit = check_daily_limit(
        rule, processed_count_today(session, user_id, rule.action_type, now)
    )
    if not limit.allowed:
        return AwardResult(
            success=False,
            reason_code=ReasonCode.DAILY_LIMIT_REACHED,
            message=limit.message,
            event_id=event_id,
        )
    return None


# ---------------------------------------------------------------------------
# Event status transitions
# ---------------------------------------------------------------------------
def _find_existing(
    session: Session, user_id: int, dedup_key: str, reference: str | None
) -> tuple[int, int] | None:
    """``(event_id, owner_id)`` of the row a rejected INSERT collided with."""
    clause = (Event.user_id == user_id) & (Event.dedup_key == dedup_key)
    if reference is not None:
        clause = clause | (Event.tx_ref == reference)
    row = session.execute(
        select(Event.id, Event.user_id).where(clause).order_by(Event.id).limit(1)
    ).first()
    return (row[0], row[1]) if row else None


def _reopen_retryable(
    session: Session, event_id: int, user_id: int, action_type: str, now: datetime
) -> bool:
    """Move a ``verifier_unavailable`` failure back to ``recorded``.

    Conditional on the failed status so concurrent resubmissions reopen
    the event at most once.
    """
    reopened = session.execute(
        update(Event)
        .where(
            Event.id == event_id,
            Event.user_id == user_id,
            Event.action_type == action_type,
            Event.status == EventStatus.FAILED.value,
            Event.reason_code == ReasonCode.VERIFIER_UNAVAILABLE.value,
        )
        .values(
            status=EventStatus.RECORDED.value,
            reason_code=None,
            failure_reason=None,
            occurred_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    return reopened == 1


def _set_status(session: Session, event_id: int, **values) -> None:
    session.execute(
        update(Event)
        .where(Event.id == event_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def _fail(engine: Engine, result: AwardResult, *, session: Session | None = None) -> AwardResult:
    """Persist ``failed`` for the result's event and hand the result back."""
    values = {
        "status": EventStatus.FAILED.value,
        "reason_code": result.reason_code.value,
        "failure_reason": result.message,
    }
    if session is not None:
        _set_status(session, result.event_id, **values)
        session.commit()
    else:
        with Session(engine) as own:
            _set_status(own, result.event_id, **values)
            own.commit()

    if result.reason_code in (ReasonCode.VERIFICATION_FAILED, ReasonCode.VERIFIER_UNAVAILABLE):
        logger.warning(
            "Event %d failed verification: %s", result.event_id, result.message
        )
    else:
        logger.info(
            "Event %d rejected (%s): %s",
            result.event_id, result.reason_code.value, result.message,
        )
    return result


# ---------------------------------------------------------------------------
# On-chain verification
# ---------------------------------------------------------------------------
def _verify_onchain(
    ctx: AwardContext, submission: EventSubmission, action_type: str, wallet: str
) -> VerificationOutcome:
    if submission.chain_id is None:
        return VerificationOutcome(False, "Invalid chain ID")

    explicit = submission.contract_address
    if explicit:
        if explicit.lower() not in ctx.registry.allowed_contracts(action_type):
            return VerificationOutcome(
                False, "Contract address not allowed for this action", suspicious=True
            )
        expected = explicit
    else:
        expected = ctx.registry.expected_contract(action_type, submission.token_symbol)

    outcome = ctx.verifier.verify(submission.tx_hash, submission.chain_id, expected)
    if not outcome.verified:
        return outcome

    receipt = outcome.receipt
    to_address = receipt.to_address if receipt else None
    if not ctx.registry.is_known_contract(to_address):
        return VerificationOutcome(
            False, "Transaction not sent to a valid Nuvia contract", suspicious=True
        )

    if ctx.require_sender_match:
        sender = (receipt.from_address or "").lower()
        if sender != wallet.lower():
            return VerificationOutcome(
                False, "Transaction sender does not match wallet", suspicious=True
            )

    return outcome


# ---------------------------------------------------------------------------
# The pipeline
# ---------------------------------------------------------------------------
def process_event(
    engine: Engine,
    ctx: AwardContext,
    user_id: int,
    submission: EventSubmission,
    *,
    now: datetime | None = None,
) -> AwardResult:
    """Run one submission through the full award pipeline.

    Raises
    ------
    UserNotFoundError
        *user_id* does not exist.
    """
    now = now or utcnow()
    action_type = normalize_action_type(submission.action_type)
    dedup_key = derive_dedup_key(submission)
    reference = tx_reference(submission)

    # -- A. record ---------------------------------------------------------
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        wallet = user.wallet_address

        event = Event(
            user_id=user_id,
            action_type=action_type,
            dedup_key=dedup_key,
            status=EventStatus.RECORDED.value,
            tx_hash=submission.tx_hash.lower() if submission.tx_hash else None,
            chain_id=submission.chain_id,
            tx_ref=reference,
            idempotency_key=(
                submission.idempotency_key.strip() if submission.idempotency_key else None
            ),
            metadata_=dict(submission.metadata),
            occurred_at=now,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(event)
                session.flush()
        except IntegrityError:
            session.rollback()
            existing = _find_existing(session, user_id, dedup_key, reference)
            if existing is not None and _reopen_retryable(
                session, existing[0], user_id, action_type, now
            ):
                event_id = existing[0]
                session.commit()
                logger.info(
                    "Retrying event %d after verifier outage (user=%d action=%s)",
                    event_id, user_id, action_type,
                )
            else:
                logger.info(
                    "Duplicate submission user=%d action=%s key=%s",
                    user_id, action_type, dedup_key,
                )
                return AwardResult(
                    success=False,
                    reason_code=ReasonCode.DUPLICATE,
                    message=DUPLICATE_MESSAGE,
                    event_id=(
                        existing[0]
                        if existing is not None and existing[1] == user_id
                        else None
                    ),
                )
        else:
            event_id = event.id
            session.commit()

    # -- B. policy ---------------------------------------------------------
    with Session(engine) as session:
        rule_row = get_active_rule(session, action_type)
        if rule_row is None:
            _set_status(
                session, event_id,
                status=EventStatus.PROCESSED.value,
                reason_code=ReasonCode.NO_RULE.value,
                xp_awarded=0,
                processed_at=now,
            )
            session.commit()
            logger.info("No XP rule for action %s; event %d recorded", action_type, event_id)
            return AwardResult(
                success=True,
                reason_code=ReasonCode.NO_RULE,
                message=NO_RULE_MESSAGE,
                event_id=event_id,
            )
        rule = _RuleSnapshot.of(rule_row)

        validation = validate_submission(rule, submission)
        if not validation.valid:
            return _fail(engine, AwardResult(
                success=False,
                reason_code=validation.reason_code,
                message=validation.message,
                event_id=event_id,
            ), session=session)

        rejection = _check_frequency(session, rule, user_id, now, event_id)
        if rejection is not None:
            return _fail(engine, rejection, session=session)

    # -- C. verify ---------------------------------------------------------
    if submission.is_onchain:
        outcome = _verify_onchain(ctx, submission, action_type, wallet)
        if not outcome.verified:
            if outcome.suspicious:
                flag_user(engine, user_id, outcome.reason)
            return _fail(engine, AwardResult(
                success=False,
                reason_code=(
                    ReasonCode.VERIFIER_UNAVAILABLE if outcome.retryable
                    else ReasonCode.VERIFICATION_FAILED
                ),
                message=f"Onchain verification failed: {outcome.reason}",
                event_id=event_id,
                retryable=outcome.retryable,
            ))
        with Session(engine) as session:
            _set_status(session, event_id, status=EventStatus.VERIFIED.value)
            session.commit()

    # -- D. award ----------------------------------------------------------
    with Session(engine) as session:
        # Row lock serialises concurrent awards for this user
        session.get(User, user_id, with_for_update=True)

        rejection = _check_frequency(session, rule, user_id, now, event_id)
        if rejection is not None:
            return _fail(engine, rejection, session=session)

        balance_after = None
        if rule.xp_amount:
            entry = append_entry(
                session,
                user_id,
                rule.xp_amount,
                LedgerReason.for_action(action_type),
                event_id=event_id,
                description=f"XP from {action_type}",
                metadata={"event_id": event_id, "dedup_key": dedup_key},
                now=now,
            )
            balance_after = entry.balance_after
        _set_status(
            session, event_id,
            status=EventStatus.PROCESSED.value,
            reason_code=ReasonCode.AWARDED.value,
            xp_awarded=rule.xp_amount,
            processed_at=now,
        )
        session.commit()

    logger.info(
        "Awarded %d XP to user %d for %s (event %d)",
        rule.xp_amount, user_id, action_type, event_id,
    )
    result = AwardResult(
        success=True,
        reason_code=ReasonCode.AWARDED,
        message=f"Successfully earned {rule.xp_amount} XP",
        xp_awarded=rule.xp_amount,
        event_id=event_id,
        balance_after=balance_after,
    )

    # -- E. fan-out ----------------------------------------------------------
    try:
        result.completed_quests = advance_quests_for_event(
            engine, user_id, action_type, event_id=event_id, now=now
        )
    except Exception:
        logger.exception("Quest progress update failed for event %d", event_id)
        result.quest_update_failed = True

    try:
        reevaluate_for_invitee(engine, user_id, ctx.referral, now=now)
    except Exception:
        logger.exception("Referral re-evaluation failed for user %d", user_id)

    return result


# ---------------------------------------------------------------------------
# Direct credits & read views
# ---------------------------------------------------------------------------
def award_xp(
    engine: Engine,
    user_id: int,
    delta_xp: int,
    reason: str | LedgerReason,
    *,
    description: str = "",
    metadata: dict | None = None,
    now: datetime | None = None,
) -> XPLedger:
    """Append a single ledger entry in its own transaction."""
    with Session(engine, expire_on_commit=False) as session:
        entry = append_entry(
            session, user_id, delta_xp, reason,
            description=description, metadata=metadata, now=now,
        )
        session.commit()
        return entry


def list_user_events(
    session: Session,
    user_id: int,
    *,
    action_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
    skip: int = 0,
) -> list[Event]:
    """Events for *user_id*, newest first."""
    stmt = select(Event).where(Event.user_id == user_id)
    if action_type:
        stmt = stmt.where(Event.action_type == normalize_action_type(action_type))
    if status:
        stmt = stmt.where(Event.status == status)
    stmt = stmt.order_by(Event.occurred_at.desc(), Event.id.desc()).offset(skip).limit(limit)
    return list(session.scalars(stmt).all())
