"""
nuvia.engine.referral — Referral state machine
===============================================

Pure transition logic.  Criteria are read through a :class:`ReferralQueries`
port so the machine never touches storage itself; the service layer
supplies a DB-backed implementation.

    pending ──(all criteria met)──▶ verified ──(payout)──▶ rewarded
       │                               │
       └──────────────▶ rejected ◀─────┘
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from nuvia.database.models import ReferralStatus

__all__ = [
    "Criteria",
    "ReferralQueries",
    "can_transition",
    "evaluate_criteria",
]

_TRANSITIONS: dict[ReferralStatus, frozenset[ReferralStatus]] = {
    ReferralStatus.PENDING: frozenset({ReferralStatus.VERIFIED, ReferralStatus.REJECTED}),
    ReferralStatus.VERIFIED: frozenset({ReferralStatus.REWARDED, ReferralStatus.REJECTED}),
    ReferralStatus.REWARDED: frozenset(),
    ReferralStatus.REJECTED: frozenset(),
}


class ReferralQueries(Protocol):
    """Read-only questions the machine asks about an invitee."""

    def has_logged_in(self, user_id: int) -> bool: ...

    def has_onchain_action(self, user_id: int) -> bool: ...

    def current_xp(self, user_id: int) -> int: ...


@dataclass(frozen=True, slots=True)
class Criteria:
    first_login: bool = False
    first_onchain_action: bool = False
    min_xp_reached: bool = False

    @property
    def all_met(self) -> bool:
        return self.first_login and self.first_onchain_action and self.min_xp_reached


def can_transition(current: str, target: str) -> bool:
    return ReferralStatus(target) in _TRANSITIONS[ReferralStatus(current)]


def evaluate_criteria(
    previous: Criteria,
    invitee_id: int,
    threshold: int,
    queries: ReferralQueries,
) -> Criteria:
    """Re-evaluate the criteria for *invitee_id*.

    Flags are sticky: a criterion already met stays met and is not
    queried again.
    """
    return Criteria(
        first_login=previous.first_login or queries.has_logged_in(invitee_id),
        first_onchain_action=(
            previous.first_onchain_action or queries.has_onchain_action(invitee_id)
        ),
        min_xp_reached=(
            previous.min_xp_reached or queries.current_xp(invitee_id) >= threshold
        ),
    )
