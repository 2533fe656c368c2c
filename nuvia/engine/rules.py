"""
nuvia.engine.rules — Rule validation, cooldown & daily-limit predicates
=======================================================================

Pure functions, no DB I/O.  The services fetch the rule and the relevant
event history, then ask this module whether the submission passes.

Check order (first failure wins):
  rule active → chain allow-list → protocol allow-list → minimum amount
  → cooldown → daily limit
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from nuvia.engine.events import EventSubmission

__all__ = [
    "CooldownCheck",
    "LimitCheck",
    "ReasonCode",
    "RuleLike",
    "Validation",
    "check_cooldown",
    "check_daily_limit",
    "parse_amount",
    "validate_submission",
]


class ReasonCode(enum.StrEnum):
    """Stable, machine-checkable outcome of one submission."""
    AWARDED = "awarded"
    NO_RULE = "no_rule"
    DUPLICATE = "duplicate"
    RULE_INACTIVE = "rule_inactive"
    INVALID_CHAIN = "invalid_chain"
    INVALID_PROTOCOL = "invalid_protocol"
    BELOW_MIN_AMOUNT = "below_min_amount"
    INVALID_AMOUNT = "invalid_amount"
    COOLDOWN_ACTIVE = "cooldown_active"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    VERIFICATION_FAILED = "verification_failed"
    VERIFIER_UNAVAILABLE = "verifier_unavailable"


class RuleLike(Protocol):
    """Attributes of an XP rule the predicates read (ORM row or stub)."""

    action_type: str
    xp_amount: int
    is_active: bool
    daily_limit: int | None
    cooldown_minutes: int | None
    min_amount: str | None
    valid_chains: list | None
    valid_protocols: list | None


@dataclass(frozen=True, slots=True)
class Validation:
    valid: bool
    reason_code: ReasonCode | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class CooldownCheck:
    allowed: bool
    next_available_at: datetime | None = None
    remaining_minutes: int = 0

    @property
    def message(self) -> str | None:
        if self.allowed:
            return None
        return f"Cooldown active. Try again in {self.remaining_minutes} minutes."


@dataclass(frozen=True, slots=True)
class LimitCheck:
    allowed: bool
    remaining: int | None = None
    limit: int | None = None

    @property
    def message(self) -> str | None:
        if self.allowed:
            return None
        return f"Daily limit of {self.limit} reached"


_VALID = Validation(valid=True)


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------
def parse_amount(value: Any) -> Decimal | None:
    """Parse a decimal amount; ``None`` if missing, malformed or non-finite.

    Floats go through ``str`` first so ``15.1`` stays ``Decimal("15.1")``.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _format_amount(value: Decimal) -> str:
    return format(value.normalize(), "f")


# ---------------------------------------------------------------------------
# Static validation
# ---------------------------------------------------------------------------
def validate_submission(rule: RuleLike | None, submission: EventSubmission) -> Validation:
    """Check *submission* against *rule* (activity, allow-lists, min amount)."""
    if rule is None or not rule.is_active:
        return Validation(
            False,
            ReasonCode.NO_RULE if rule is None else ReasonCode.RULE_INACTIVE,
            "No active rule found for this action",
        )

    chains = list(rule.valid_chains or [])
    if chains:
        allowed_chains = {int(c) for c in chains}
        if submission.chain_id not in allowed_chains:
            return Validation(False, ReasonCode.INVALID_CHAIN, "Invalid chain ID")

    protocols = list(rule.valid_protocols or [])
    if protocols:
        wanted = (submission.protocol or "").lower()
        if wanted not in {str(p).lower() for p in protocols}:
            return Validation(False, ReasonCode.INVALID_PROTOCOL, "Invalid protocol")

    if rule.min_amount not in (None, ""):
        minimum = parse_amount(rule.min_amount)
        amount = parse_amount(submission.amount)
        if minimum is not None:
            if amount is None:
                return Validation(False, ReasonCode.INVALID_AMOUNT, "Invalid amount")
            if amount < minimum:
                return Validation(
                    False,
                    ReasonCode.BELOW_MIN_AMOUNT,
                    f"Minimum amount is {_format_amount(minimum)}",
                )

    return _VALID


# ---------------------------------------------------------------------------
# Cooldown
# ---------------------------------------------------------------------------
def check_cooldown(
    rule: RuleLike, last_processed_at: datetime | None, now: datetime
) -> CooldownCheck:
    """Reject when the last processed event is within ``cooldown_minutes``.

    ``last_processed_at`` must come from events with status ``processed``
    only; failed attempts never start a cooldown.
    """
    minutes = rule.cooldown_minutes or 0
    if minutes <= 0 or last_processed_at is None:
        return CooldownCheck(allowed=True)

    next_available_at = last_processed_at + timedelta(minutes=minutes)
    if now >= next_available_at:
        return CooldownCheck(allowed=True)

    remaining = math.ceil((next_available_at - now).total_seconds() / 60)
    return CooldownCheck(
        allowed=False,
        next_available_at=next_available_at,
        remaining_minutes=max(remaining, 1),
    )


# ---------------------------------------------------------------------------
# Daily limit
# ---------------------------------------------------------------------------
def check_daily_limit(rule: RuleLike, processed_today: int) -> LimitCheck:
    """Reject when *processed_today* has reached ``daily_limit``."""
    limit = rule.daily_limit
    if limit is None or limit <= 0:
        return LimitCheck(allowed=True)
    if processed_today >= limit:
        return LimitCheck(allowed=False, remaining=0, limit=limit)
    return LimitCheck(allowed=True, remaining=limit - processed_today, limit=limit)
