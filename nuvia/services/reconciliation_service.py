"""
nuvia.services.reconciliation_service — Ledger / balance reconciliation
========================================================================

Periodic check that every user's cached ``total_xp`` equals
``SUM(xp_ledger.delta_xp)`` and that each user's chain of
``balance_after`` values is consistent.

How it works:
    1. ``SUM(delta_xp)`` per user from ``xp_ledger`` is the ground truth.
    2. Compare it with ``users.total_xp``.
    3. Report drift.  Only with ``fix=True`` is the cached balance
       overwritten, one WARNING per correction.
    4. Walk each drifting user's chain and report breaks; these are never
       auto-fixed because ledger rows are immutable.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select, update

from nuvia.constants import utcnow
from nuvia.database.engine import get_session
from nuvia.database.models import User, XPLedger
from nuvia.services.ledger_service import find_chain_breaks

logger = logging.getLogger(__name__)


def reconcile_balances(engine: Engine, *, fix: bool = False) -> dict:
    """Compare cached balances with the ledger.

    Returns ``{"checked": N, "drifted": M, "fixed": bool, "drift": [...],
    "chain_breaks": {...}, "timestamp": ...}``.
    """
    drift: list[dict] = []
    chain_breaks: dict[int, list[str]] = {}

    with get_session(engine) as session:
        truth_map: dict[int, int] = {
            row.user_id: int(row.actual)
            for row in session.execute(
                select(
                    XPLedger.user_id,
                    func.sum(XPLedger.delta_xp).label("actual"),
                ).group_by(XPLedger.user_id)
            ).all()
        }

        users = session.execute(select(User.id, User.total_xp)).all()
        for user_id, stored in users:
            actual = truth_map.get(user_id, 0)
            if stored == actual:
                continue
            drift.append({
                "user_id": user_id,
                "stored": stored,
                "actual": actual,
                "diff": actual - stored,
            })
            breaks = find_chain_breaks(session, user_id)
            if breaks:
                chain_breaks[user_id] = breaks

            if fix:
                session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(total_xp=actual)
                    .execution_options(synchronize_session=False)
                )
                logger.warning(
                    "Reconciliation corrected user %d total_xp %d → %d",
                    user_id, stored, actual,
                )

    if drift:
        logger.warning(
            "Balance reconciliation: %d/%d users drifted%s",
            len(drift), len(users), " (fixed)" if fix else "",
        )
    else:
        logger.info("Balance reconciliation: all %d balances match", len(users))

    return {
        "checked": len(users),
        "drifted": len(drift),
        "fixed": fix and bool(drift),
        "drift": drift,
        "chain_breaks": chain_breaks,
        "timestamp": utcnow().isoformat(),
    }
