"""
nuvia.services.auth_service — Wallet challenge / response login
================================================================

1. ``issue_nonce(wallet)`` creates the user on first contact and stores a
   one-time nonce with an expiry.
2. The client signs ``SIGN_MESSAGE_PREFIX + nonce`` (EIP-191 personal_sign).
3. ``verify_login(wallet, signature, nonce)`` checks the nonce, recovers
   the signer, clears the nonce and stamps the login timestamps.

JWT issuance lives in :mod:`nuvia.api.auth`; this module never sees the
secret.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from nuvia.config import ReferralConfig
from nuvia.constants import (
    DEFAULT_NONCE_TTL_MINUTES,
    NONCE_ALPHABET,
    NONCE_LENGTH,
    SIGN_MESSAGE_PREFIX,
    as_utc,
    normalize_wallet,
    utcnow,
)
from nuvia.database.models import User
from nuvia.errors import AuthError
from nuvia.services.referral_service import reevaluate_for_invitee
from nuvia.services.user_service import get_or_create_user, get_user_by_wallet

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    def recover(self, message: str, signature: str) -> str: ...


class EthSignatureVerifier:
    """Recover the signer of an EIP-191 personal message."""

    def recover(self, message: str, signature: str) -> str:
        return Account.recover_message(encode_defunct(text=message), signature=signature)


@dataclass
class NonceChallenge:
    wallet_address: str
    nonce: str
    message: str
    expires_at: datetime


@dataclass
class LoginResult:
    user_id: int
    wallet_address: str
    is_admin: bool
    first_login: bool
    referral_code: str


def sign_message(nonce: str) -> str:
    return f"{SIGN_MESSAGE_PREFIX}{nonce}"


def _new_nonce() -> str:
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(NONCE_LENGTH))


def issue_nonce(
    engine: Engine,
    wallet: str,
    *,
    ttl_minutes: int = DEFAULT_NONCE_TTL_MINUTES,
    now: datetime | None = None,
) -> NonceChallenge:
    """Store a fresh nonce for *wallet*, creating the user if needed."""
    now = now or utcnow()
    with Session(engine) as session:
        user, created = get_or_create_user(session, wallet)
        user.nonce = _new_nonce()
        user.nonce_expiry = now + timedelta(minutes=ttl_minutes)
        challenge = NonceChallenge(
            wallet_address=user.wallet_address,
            nonce=user.nonce,
            message=sign_message(user.nonce),
            expires_at=user.nonce_expiry,
        )
        session.commit()
    if created:
        logger.info("New wallet registered: %s", challenge.wallet_address)
    return challenge


def verify_login(
    engine: Engine,
    wallet: str,
    signature: str,
    nonce: str,
    *,
    verifier: SignatureVerifier | None = None,
    referral_cfg: ReferralConfig | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> LoginResult:
    """Check the signed challenge and record the login.

    Raises
    ------
    AuthError
        Unknown wallet, nonce mismatch or expiry, or a signature that
        does not recover to *wallet*.
    """
    now = now or utcnow()
    verifier = verifier or EthSignatureVerifier()
    try:
        address = normalize_wallet(wallet)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc

    with Session(engine) as session:
        user = get_user_by_wallet(session, address)
        if user is None or not user.nonce:
            raise AuthError("No pending login challenge for this wallet")
        if user.nonce != nonce:
            raise AuthError("Invalid nonce")
        expiry = as_utc(user.nonce_expiry)
        if expiry is None or expiry < now:
            raise AuthError("Nonce expired")

        try:
            recovered = verifier.recover(sign_message(nonce), signature)
        except Exception as exc:  # malformed signatures raise a variety of errors
            logger.warning("Signature recovery failed for %s: %s", address, exc)
            raise AuthError("Invalid signature") from exc
        if (recovered or "").lower() != address:
            logger.warning("Signature mismatch: expected %s, recovered %s", address, recovered)
            raise AuthError("Invalid signature")

        first_login = user.first_login_at is None
        user.nonce = None
        user.nonce_expiry = None
        if first_login:
            user.first_login_at = now
        user.last_login_at = now
        if ip_address:
            user.ip_address = ip_address
        if user_agent:
            user.user_agent = user_agent[:500]

        result = LoginResult(
            user_id=user.id,
            wallet_address=user.wallet_address,
            is_admin=bool(user.is_admin),
            first_login=first_login,
            referral_code=user.referral_code,
        )
        session.commit()

    logger.info("Wallet %s logged in (user %d)", address, result.user_id)

    if referral_cfg is not None and first_login:
        try:
            reevaluate_for_invitee(engine, result.user_id, referral_cfg, now=now)
        except Exception:
            logger.exception("Referral re-evaluation failed for user %d", result.user_id)

    return result


def get_user(engine: Engine, user_id: int) -> User | None:
    with Session(engine, expire_on_commit=False) as session:
        return session.get(User, user_id)
