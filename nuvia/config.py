"""
nuvia.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for **infrastructure-only** settings: chain RPC
endpoints, the protocol contract registry, verifier tuning and referral
payout amounts.  Per-action XP rules and quests live in the database and
are edited through the admin API.

Usage::

    from nuvia.config import load_config

    cfg = load_config()            # reads ./config.yaml by default
    print(cfg.chains[84532])       # "https://sepolia.base.org"
    print(cfg.contracts["faucet"]) # "0x…"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from nuvia.constants import (
    DEFAULT_INVITEE_XP,
    DEFAULT_INVITER_XP,
    DEFAULT_MIN_XP_THRESHOLD,
    DEFAULT_NONCE_TTL_MINUTES,
    DEFAULT_VERIFIER_TIMEOUT_SECONDS,
)


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ReferralConfig:
    """Referral payout amounts and the invitee XP threshold."""

    inviter_xp: int = DEFAULT_INVITER_XP
    invitee_xp: int = DEFAULT_INVITEE_XP
    min_xp_threshold: int = DEFAULT_MIN_XP_THRESHOLD


@dataclass(frozen=True, slots=True)
class NuviaConfig:
    """Immutable configuration loaded from ``config.yaml``.

    ``contracts`` and ``tokens`` map names to addresses exactly as written
    in the file; normalisation happens in
    :class:`~nuvia.services.contract_registry.ContractRegistry`.
    """

    app_name: str

    # chain id → JSON-RPC URL
    chains: dict[int, str] = field(default_factory=dict)

    # e.g. {"faucet": "0x…", "vaultUSDC": "0x…", "strategyUSDC": "0x…"}
    contracts: dict[str, str] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    verifier_timeout_seconds: float = DEFAULT_VERIFIER_TIMEOUT_SECONDS
    require_sender_match: bool = True
    nonce_ttl_minutes: int = DEFAULT_NONCE_TTL_MINUTES
    referral: ReferralConfig = field(default_factory=ReferralConfig)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def default_config_path() -> Path:
    """Return ``$NUVIA_CONFIG`` if set, else ``./config.yaml``."""
    return Path(os.getenv("NUVIA_CONFIG", "config.yaml"))


def parse_config(raw: dict) -> NuviaConfig:
    """Build a :class:`NuviaConfig` from an already-parsed mapping.

    Raises
    ------
    KeyError
        If ``app_name`` is missing.
    """
    referral_raw = raw.get("referral") or {}
    referral = ReferralConfig(
        inviter_xp=int(referral_raw.get("inviter_xp", DEFAULT_INVITER_XP)),
        invitee_xp=int(referral_raw.get("invitee_xp", DEFAULT_INVITEE_XP)),
        min_xp_threshold=int(
            referral_raw.get("min_xp_threshold", DEFAULT_MIN_XP_THRESHOLD)
        ),
    )

    return NuviaConfig(
        app_name=raw["app_name"],
        chains={int(k): str(v) for k, v in (raw.get("chains") or {}).items()},
        contracts={str(k): str(v) for k, v in (raw.get("contracts") or {}).items()},
        tokens={str(k): str(v) for k, v in (raw.get("tokens") or {}).items()},
        verifier_timeout_seconds=float(
            raw.get("verifier_timeout_seconds", DEFAULT_VERIFIER_TIMEOUT_SECONDS)
        ),
        require_sender_match=bool(raw.get("require_sender_match", True)),
        nonce_ttl_minutes=int(raw.get("nonce_ttl_minutes", DEFAULT_NONCE_TTL_MINUTES)),
        referral=referral,
    )


def load_config(path: str | Path | None = None) -> NuviaConfig:
    """Read *path* and return a :class:`NuviaConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$NUVIA_CONFIG`` or ``config.yaml`` in the working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return parse_config(raw)
