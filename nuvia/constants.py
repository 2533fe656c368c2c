"""
nuvia.constants — Shared Constants & Helpers
=============================================

Single source of truth for defaults and string formats shared by the
engine, services and API.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Wallets & authentication
# ---------------------------------------------------------------------------
WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SIGN_MESSAGE_PREFIX = "Sign this message to authenticate with Nuvia Finance: "

NONCE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
NONCE_LENGTH = 32
DEFAULT_NONCE_TTL_MINUTES = 5

# ---------------------------------------------------------------------------
# Referral codes — NUV-XXXXXX
# ---------------------------------------------------------------------------
REFERRAL_CODE_PREFIX = "NUV-"
REFERRAL_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
REFERRAL_CODE_LENGTH = 6
REFERRAL_CODE_MAX_ATTEMPTS = 10

WAITLIST_CODE_PREFIX = "NUVIA-"

DEFAULT_INVITER_XP = 500
DEFAULT_INVITEE_XP = 100
DEFAULT_MIN_XP_THRESHOLD = 100

# ---------------------------------------------------------------------------
# On-chain verification
# ---------------------------------------------------------------------------
DEFAULT_VERIFIER_TIMEOUT_SECONDS = 10.0

# ---------------------------------------------------------------------------
# Fixed window used by one-time quests
# ---------------------------------------------------------------------------
ONE_TIME_PERIOD_START = datetime(1970, 1, 1, tzinfo=UTC)
ONE_TIME_PERIOD_END = datetime(9999, 12, 31, 23, 59, 59, 999000, tzinfo=UTC)


def normalize_wallet(address: str) -> str:
    """Return the lowercase ``0x``-prefixed form of *address*.

    Raises ``ValueError`` if it is not a 20-byte hex address.
    """
    candidate = (address or "").strip()
    if not WALLET_RE.match(candidate):
        raise ValueError(f"Invalid wallet address: {address!r}")
    return candidate.lower()


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def normalize_email(email: str) -> str:
    """Lowercase and strip *email*; ``ValueError`` if it is not an address."""
    candidate = (email or "").strip().lower()
    if len(candidate) > 255 or not EMAIL_RE.match(candidate):
        raise ValueError(f"Invalid email address: {email!r}")
    return candidate
