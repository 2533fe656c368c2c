"""
nuvia.engine.codes — Referral code generation
==============================================

Codes look like ``NUV-7K2QXA`` (users) or ``NUVIA-7K2QXA`` (waitlist).  Uniqueness is checked by a caller-
supplied predicate so the generator stays pure; the database unique
constraint on ``users.referral_code`` remains the final arbiter.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable

from nuvia.constants import (
    REFERRAL_CODE_ALPHABET,
    REFERRAL_CODE_LENGTH,
    REFERRAL_CODE_MAX_ATTEMPTS,
    REFERRAL_CODE_PREFIX,
)
from nuvia.errors import CodeGenerationError


def generate_code(
    choice: Callable[[str], str] = secrets.choice, *, prefix: str = REFERRAL_CODE_PREFIX
) -> str:
    body = "".join(choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    return f"{prefix}{body}"


def generate_unique_code(
    exists_check: Callable[[str], bool],
    *,
    max_attempts: int = REFERRAL_CODE_MAX_ATTEMPTS,
    choice: Callable[[str], str] = secrets.choice,
    prefix: str = REFERRAL_CODE_PREFIX,
) -> str:
    """Return a code for which ``exists_check(code)`` is false.

    Raises
    ------
    CodeGenerationError
        After *max_attempts* collisions.
    """
    for _ in range(max_attempts):
        code = generate_code(choice, prefix=prefix)
        if not exists_check(code):
            return code
    raise CodeGenerationError(
        f"Could not generate a unique referral code after {max_attempts} attempts"
    )
