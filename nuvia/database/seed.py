"""
nuvia.database.seed — Default Rules & Quests Seeder
====================================================

Baseline XP rules and quests inserted on first startup so a fresh
deployment awards XP immediately.

Idempotent — only inserts action types / quest names that don't already
exist.  Rows edited later through the admin API are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from nuvia.database.models import Quest, QuestCadence, XPRule

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default catalogues
# ---------------------------------------------------------------------------
DEFAULT_RULES: list[dict] = [
    {
        "action_type": "connect_wallet",
        "xp_amount": 50,
        "daily_limit": 1,
        "cooldown_minutes": 1440,
        "description": "Connect your wallet to Nuvia",
    },
    {
        "action_type": "deposit",
        "xp_amount": 100,
        "min_amount": "10",
        "valid_chains": [84532],
        "description": "Deposit tokens into a Nuvia vault",
    },
    {
        "action_type": "supply",
        "xp_amount": 150,
        "min_amount": "10",
        "valid_chains": [84532],
        "description": "Supply liquidity to a strategy",
    },
    {
        "action_type": "claim_faucet",
        "xp_amount": 25,
        "daily_limit": 1,
        "cooldown_minutes": 1440,
        "description": "Claim test tokens from the faucet",
    },
    {
        "action_type": "select_strategy",
        "xp_amount": 30,
        "daily_limit": 1,
        "description": "Select an investment strategy",
    },
]

DEFAULT_QUESTS: list[dict] = [
    {
        "name": "Daily Depositor",
        "description": "Make 3 deposits today",
        "cadence": QuestCadence.DAILY.value,
        "event_type": "deposit",
        "target_count": 3,
        "reward_xp": 50,
    },
    {
        "name": "Faucet Regular",
        "description": "Claim from the faucet on 5 days this week",
        "cadence": QuestCadence.WEEKLY.value,
        "event_type": "claim_faucet",
        "target_count": 5,
        "reward_xp": 100,
    },
    {
        "name": "First Supply",
        "description": "Supply liquidity to any strategy",
        "cadence": QuestCadence.ONE_TIME.value,
        "event_type": "supply",
        "target_count": 1,
        "reward_xp": 200,
    },
]


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_defaults(engine: Engine) -> None:
    """Insert default rules and quests that don't yet exist."""
    session = Session(engine)
    inserted_rules = inserted_quests = 0
    try:
        existing_rules = set(session.scalars(select(XPRule.action_type)).all())
        for entry in DEFAULT_RULES:
            if entry["action_type"] in existing_rules:
                continue
            session.add(XPRule(
                action_type=entry["action_type"],
                xp_amount=entry["xp_amount"],
                daily_limit=entry.get("daily_limit"),
                cooldown_minutes=entry.get("cooldown_minutes", 0),
                min_amount=entry.get("min_amount"),
                valid_chains=list(entry.get("valid_chains", [])),
                valid_protocols=list(entry.get("valid_protocols", [])),
                description=entry["description"],
            ))
            inserted_rules += 1

        existing_quests = set(session.scalars(select(Quest.name)).all())
        for entry in DEFAULT_QUESTS:
            if entry["name"] in existing_quests:
                continue
            session.add(Quest(**entry))
            inserted_quests += 1

        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted_rules or inserted_quests:
        logger.info(
            "Seeded %d default XP rules and %d default quests.",
            inserted_rules, inserted_quests,
        )
