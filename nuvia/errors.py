"""
nuvia.errors — Domain Exceptions
=================================

Policy rejections inside the award pipeline are returned as values
(:class:`~nuvia.engine.rules.ReasonCode`), never raised.  The exceptions
below are for invariant violations and for explicit operations (claims,
referral transitions, login) that have no result value to carry a
rejection.
"""

from __future__ import annotations


class NuviaError(Exception):
    """Base class for all domain errors."""


class UserNotFoundError(NuviaError):
    """No user row exists for the given id / wallet."""


class InsufficientBalanceError(NuviaError):
    """A ledger append would drive the balance below zero."""

    def __init__(self, user_id: int, delta_xp: int) -> None:
        super().__init__(
            f"Insufficient XP balance for user {user_id} (delta {delta_xp})"
        )
        self.user_id = user_id
        self.delta_xp = delta_xp


class CodeGenerationError(NuviaError):
    """Unique code generation exhausted its retry budget."""


class AuthError(NuviaError):
    """Nonce or signature check failed during wallet login."""


class QuestClaimError(NuviaError):
    """Quest reward cannot be claimed (not found, not completed, claimed)."""


class AdminValidationError(NuviaError):
    """Admin input rejected before any write."""


class ReferralError(NuviaError):
    """Base for referral failures."""


class AlreadyReferredError(ReferralError):
    """The invitee already has a referral."""


class SelfReferralError(ReferralError):
    """A user tried to apply their own referral code."""


class InvalidReferralCodeError(ReferralError):
    """No user owns the supplied referral code."""


class ReferralStateError(ReferralError):
    """The requested transition is not allowed from the current status."""


class WaitlistError(NuviaError):
    """Waitlist sign-up rejected (duplicate contact, unknown code)."""
