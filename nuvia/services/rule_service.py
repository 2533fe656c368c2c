"""
nuvia.services.rule_service — Rule Store reads
===============================================

Read side of the Rule Store.  Mutations go through
:mod:`nuvia.services.admin_service` so every change is audited.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from nuvia.database.models import XPRule


def normalize_action_type(action_type: str) -> str:
    return (action_type or "").strip().lower()


def get_rule(session: Session, action_type: str) -> XPRule | None:
    return session.scalar(
        select(XPRule).where(XPRule.action_type == normalize_action_type(action_type))
    )


def get_active_rule(session: Session, action_type: str) -> XPRule | None:
    """The active rule for *action_type*, or ``None``."""
    return session.scalar(
        select(XPRule).where(
            XPRule.action_type == normalize_action_type(action_type),
            XPRule.is_active.is_(True),
        )
    )


def list_rules(session: Session, *, active_only: bool = False) -> list[XPRule]:
    stmt = select(XPRule).order_by(XPRule.action_type)
    if active_only:
        stmt = stmt.where(XPRule.is_active.is_(True))
    return list(session.scalars(stmt).all())
