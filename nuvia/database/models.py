"""
nuvia.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users                 — Wallet-keyed profiles with cached XP balance
- events                — Every submitted action attempt (audit trail)
- xp_rules              — Per-action XP policy (one row per action type)
- xp_ledger             — Append-only XP deltas; source of truth for balance
- quests                — Quest definitions (cadence, event-count rule, reward)
- quest_progress        — Per-user, per-period quest counters
- referrals             — Invite relationships and their state machine
- leaderboard_snapshots — Materialised ranking runs
- leaderboard_rows      — Ranked rows of a snapshot
- admin_log             — Append-only audit trail of admin mutations
- waitlist              — Pre-launch sign-ups with their own referral codes
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Nuvia ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventStatus(enum.StrEnum):
    """Lifecycle of a submitted action attempt."""
    RECORDED = "recorded"
    VERIFIED = "verified"
    PROCESSED = "processed"
    FAILED = "failed"


class LedgerReason(enum.StrEnum):
    """Closed set of reasons a ledger entry may exist for."""
    CONNECT_WALLET = "connect_wallet"
    DEPOSIT = "deposit"
    SUPPLY = "supply"
    BORROW = "borrow"
    SWAP = "swap"
    CLAIM_FAUCET = "claim_faucet"
    COMPLETE_QUEST = "complete_quest"
    REFERRAL_REWARD_INVITER = "referral_reward_inviter"
    REFERRAL_REWARD_INVITEE = "referral_reward_invitee"
    SELECT_STRATEGY = "select_strategy"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    PENALTY = "penalty"
    OTHER = "other"

    @classmethod
    def for_action(cls, action_type: str) -> LedgerReason:
        """Map an action type to its reason code, ``other`` if unlisted."""
        try:
            return cls(action_type)
        except ValueError:
            return cls.OTHER


class QuestCadence(enum.StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    ONE_TIME = "one-time"


class QuestRuleType(enum.StrEnum):
    EVENT_COUNT = "event_count"


class ReferralStatus(enum.StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REWARDED = "rewarded"
    REJECTED = "rejected"


class WaitlistStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"


class LeaderboardPeriod(enum.StrEnum):
    ALL_TIME = "all-time"
    DAILY = "daily"
    WEEKLY = "weekly"


# ---------------------------------------------------------------------------
# Users — one row per wallet
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, default=None)
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)

    # Cached projection of SUM(xp_ledger.delta_xp); written only by the ledger
    total_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Sequence number of the latest ledger entry for this user
    ledger_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    nonce: Mapped[str | None] = mapped_column(String(64), default=None)
    nonce_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    first_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)
    user_agent: Mapped[str | None] = mapped_column(String(500), default=None)
    is_suspicious: Mapped[bool] = mapped_column(Boolean, default=False)
    suspicious_reasons: Mapped[list | None] = mapped_column(JSONB, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    ledger_entries: Mapped[list[XPLedger]] = relationship(
        back_populates="user", order_by="XPLedger.seq"
    )

    __table_args__ = (
        CheckConstraint("total_xp >= 0", name="ck_users_total_xp_non_negative"),
        Index("ix_users_total_xp_desc", total_xp.desc()),
        Index("ix_users_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} wallet={self.wallet_address!r} xp={self.total_xp}>"


# ---------------------------------------------------------------------------
# Events — one row per submitted action attempt
# ---------------------------------------------------------------------------
class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.RECORDED.value
    )
    reason_code: Mapped[str | None] = mapped_column(String(40), default=None)
    failure_reason: Mapped[str | None] = mapped_column(Text, default=None)
    xp_awarded: Mapped[int] = mapped_column(Integer, default=0)

    # Denormalised from metadata so "has an on-chain action" is a plain query
    tx_hash: Mapped[str | None] = mapped_column(String(80), default=None)
    chain_id: Mapped[int | None] = mapped_column(Integer, default=None)
    # ``chain:txhash``; globally unique so one transaction backs one event
    tx_ref: Mapped[str | None] = mapped_column(String(120), default=None)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), default=None)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        # Deduplication is enforced by the database, not by a read-then-write
        UniqueConstraint("user_id", "dedup_key", name="uq_events_user_dedup"),
        UniqueConstraint("tx_ref", name="uq_events_tx_ref"),
        Index("ix_events_user_action_status_time", "user_id", "action_type", "status", "occurred_at"),
        Index("ix_events_user_time", "user_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<Event id={self.id} user={self.user_id} type={self.action_type} status={self.status}>"


# ---------------------------------------------------------------------------
# XPRule — per-action policy
# ---------------------------------------------------------------------------
class XPRule(Base):
    __tablename__ = "xp_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    xp_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_limit: Mapped[int | None] = mapped_column(Integer, default=None)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, default=0)
    # Decimal string; compared with decimal.Decimal, never float
    min_amount: Mapped[str | None] = mapped_column(String(78), default=None)
    valid_chains: Mapped[list | None] = mapped_column(JSONB, default=list)
    valid_protocols: Mapped[list | None] = mapped_column(JSONB, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[str] = mapped_column(Text, default="")
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("xp_amount >= 0", name="ck_xp_rules_amount_non_negative"),
        CheckConstraint("cooldown_minutes >= 0", name="ck_xp_rules_cooldown_non_negative"),
        Index("ix_xp_rules_action_active", "action_type", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<XPRule action={self.action_type!r} xp={self.xp_amount} active={self.is_active}>"


# ---------------------------------------------------------------------------
# XPLedger — append-only balance journal
# ---------------------------------------------------------------------------
class XPLedger(Base):
    __tablename__ = "xp_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )
    # Per-user monotonic position in the chain of balances
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    delta_xp: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    user: Mapped[User] = relationship(back_populates="ledger_entries")

    __table_args__ = (
        UniqueConstraint("user_id", "seq", name="uq_xp_ledger_user_seq"),
        CheckConstraint("balance_after >= 0", name="ck_xp_ledger_balance_non_negative"),
        Index("ix_xp_ledger_user_time", "user_id", "created_at"),
        Index("ix_xp_ledger_reason", "reason"),
        Index("ix_xp_ledger_event", "event_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<XPLedger user={self.user_id} seq={self.seq} "
            f"delta={self.delta_xp} after={self.balance_after}>"
        )


# ---------------------------------------------------------------------------
# Quest — cadence + event-count rule + reward
# ---------------------------------------------------------------------------
class Quest(Base):
    __tablename__ = "quests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    cadence: Mapped[str] = mapped_column(String(20), nullable=False)
    rule_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default=QuestRuleType.EVENT_COUNT.value
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    reward_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("target_count > 0", name="ck_quests_target_positive"),
        CheckConstraint("reward_xp >= 0", name="ck_quests_reward_non_negative"),
        Index("ix_quests_active_event", "is_active", "rule_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<Quest id={self.id} name={self.name!r} cadence={self.cadence}>"


# ---------------------------------------------------------------------------
# QuestProgress — one row per (user, quest, period)
# ---------------------------------------------------------------------------
class QuestProgress(Base):
    __tablename__ = "quest_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    quest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("quests.id", ondelete="CASCADE"), nullable=False
    )
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    progress_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    is_claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_event_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )

    quest: Mapped[Quest] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "quest_id", "period_start", name="uq_quest_progress_period"),
        Index("ix_quest_progress_user_claimed", "user_id", "is_claimed"),
    )

    def __repr__(self) -> str:
        return (
            f"<QuestProgress user={self.user_id} quest={self.quest_id} "
            f"value={self.progress_value} done={self.is_completed}>"
        )


# ---------------------------------------------------------------------------
# Referral — one row per invitee, ever
# ---------------------------------------------------------------------------
class Referral(Base):
    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inviter_user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    invitee_user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReferralStatus.PENDING.value
    )

    # Verification criteria, sticky once true
    first_login: Mapped[bool] = mapped_column(Boolean, default=False)
    first_onchain_action: Mapped[bool] = mapped_column(Boolean, default=False)
    min_xp_reached: Mapped[bool] = mapped_column(Boolean, default=False)
    min_xp_threshold: Mapped[int] = mapped_column(Integer, default=100)

    inviter_xp_rewarded: Mapped[int] = mapped_column(Integer, default=0)
    invitee_xp_rewarded: Mapped[int] = mapped_column(Integer, default=0)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    rewarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    rejection_reason: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("invitee_user_id", name="uq_referrals_invitee"),
        Index("ix_referrals_inviter_status", "inviter_user_id", "status"),
        Index("ix_referrals_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Referral id={self.id} inviter={self.inviter_user_id} "
            f"invitee={self.invitee_user_id} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# Leaderboard snapshots
# ---------------------------------------------------------------------------
class LeaderboardSnapshot(Base):
    __tablename__ = "leaderboard_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    total_users: Mapped[int] = mapped_column(Integer, default=0)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    rows: Mapped[list[LeaderboardRow]] = relationship(
        back_populates="snapshot", cascade="all, delete-orphan",
        order_by="LeaderboardRow.rank",
    )

    __table_args__ = (
        Index("ix_leaderboard_snapshots_period_time", "period", "generated_at"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardSnapshot id={self.id} period={self.period!r}>"


class LeaderboardRow(Base):
    __tablename__ = "leaderboard_rows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("leaderboard_snapshots.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)

    snapshot: Mapped[LeaderboardSnapshot] = relationship(back_populates="rows")

    __table_args__ = (
        UniqueConstraint("snapshot_id", "user_id", name="uq_leaderboard_rows_snapshot_user"),
        Index("ix_leaderboard_rows_snapshot_rank", "snapshot_id", "rank"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardRow snapshot={self.snapshot_id} rank={self.rank} user={self.user_id}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"


# ---------------------------------------------------------------------------
# Waitlist — pre-launch sign-ups, independent of wallet users
# ---------------------------------------------------------------------------
class WaitlistEntry(Base):
    __tablename__ = "waitlist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, default=None)
    wallet_address: Mapped[str | None] = mapped_column(String(42), unique=True, default=None)
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    # Code of the entry that invited this one
    referred_by: Mapped[str | None] = mapped_column(String(16), default=None)
    referral_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WaitlistStatus.PENDING.value
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        CheckConstraint(
            "email IS NOT NULL OR wallet_address IS NOT NULL",
            name="ck_waitlist_contact",
        ),
        Index("ix_waitlist_referral_count", referral_count.desc()),
        Index("ix_waitlist_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<WaitlistEntry id={self.id} code={self.referral_code!r} status={self.status}>"
