"""Initial XP schema

Users, events, XP rules, the append-only ledger, quests and quest
progress, referrals, leaderboard snapshots and the admin audit log.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("total_xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("nonce", sa.String(64), nullable=True),
        _ts("nonce_expiry", nullable=True),
        sa.Column("is_admin", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _ts("first_login_at", nullable=True),
        _ts("last_login_at", nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("is_suspicious", sa.Boolean(), server_default=sa.false()),
        sa.Column("suspicious_reasons", postgresql.JSONB(), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("referral_code"),
        sa.CheckConstraint("total_xp >= 0", name="ck_users_total_xp_non_negative"),
    )
    op.create_index("ix_users_total_xp_desc", "users", [sa.text("total_xp DESC")])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("dedup_key", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="recorded"),
        sa.Column("reason_code", sa.String(40), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("xp_awarded", sa.Integer(), server_default="0"),
        sa.Column("tx_hash", sa.String(80), nullable=True),
        sa.Column("chain_id", sa.Integer(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _ts("occurred_at", server_default=sa.func.now(), nullable=False),
        _ts("processed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_events_user_dedup"),
    )
    op.create_index(
        "ix_events_user_action_status_time", "events",
        ["user_id", "action_type", "status", "occurred_at"],
    )
    op.create_index("ix_events_user_time", "events", ["user_id", "occurred_at"])

    op.create_table(
        "xp_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("xp_amount", sa.Integer(), nullable=False),
        sa.Column("daily_limit", sa.Integer(), nullable=True),
        sa.Column("cooldown_minutes", sa.Integer(), server_default="0"),
        sa.Column("min_amount", sa.String(78), nullable=True),
        sa.Column("valid_chains", postgresql.JSONB(), nullable=True),
        sa.Column("valid_protocols", postgresql.JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("action_type"),
        sa.CheckConstraint("xp_amount >= 0", name="ck_xp_rules_amount_non_negative"),
        sa.CheckConstraint("cooldown_minutes >= 0", name="ck_xp_rules_cooldown_non_negative"),
    )
    op.create_index("ix_xp_rules_action_active", "xp_rules", ["action_type", "is_active"])

    op.create_table(
        "xp_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("delta_xp", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(40), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _ts("created_at", server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("user_id", "seq", name="uq_xp_ledger_user_seq"),
        sa.CheckConstraint("balance_after >= 0", name="ck_xp_ledger_balance_non_negative"),
    )
    op.create_index("ix_xp_ledger_user_time", "xp_ledger", ["user_id", "created_at"])
    op.create_index("ix_xp_ledger_reason", "xp_ledger", ["reason"])
    op.create_index("ix_xp_ledger_event", "xp_ledger", ["event_id"])

    op.create_table(
        "quests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("cadence", sa.String(20), nullable=False),
        sa.Column("rule_type", sa.String(30), nullable=False, server_default="event_count"),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("target_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("reward_xp", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.CheckConstraint("target_count > 0", name="ck_quests_target_positive"),
        sa.CheckConstraint("reward_xp >= 0", name="ck_quests_reward_non_negative"),
    )
    op.create_index("ix_quests_active_event", "quests", ["is_active", "rule_type", "event_type"])

    op.create_table(
        "quest_progress",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("quest_id", sa.Integer(), nullable=False),
        _ts("period_start", nullable=False),
        _ts("period_end", nullable=False),
        sa.Column("progress_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_completed", sa.Boolean(), server_default=sa.false()),
        _ts("completed_at", nullable=True),
        sa.Column("is_claimed", sa.Boolean(), server_default=sa.false()),
        _ts("claimed_at", nullable=True),
        sa.Column("last_event_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["quest_id"], ["quests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["last_event_id"], ["events.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("user_id", "quest_id", "period_start", name="uq_quest_progress_period"),
    )
    op.create_index("ix_quest_progress_user_claimed", "quest_progress", ["user_id", "is_claimed"])

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("inviter_user_id", sa.Integer(), nullable=False),
        sa.Column("invitee_user_id", sa.Integer(), nullable=False),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("first_login", sa.Boolean(), server_default=sa.false()),
        sa.Column("first_onchain_action", sa.Boolean(), server_default=sa.false()),
        sa.Column("min_xp_reached", sa.Boolean(), server_default=sa.false()),
        sa.Column("min_xp_threshold", sa.Integer(), server_default="100"),
        sa.Column("inviter_xp_rewarded", sa.Integer(), server_default="0"),
        sa.Column("invitee_xp_rewarded", sa.Integer(), server_default="0"),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _ts("verified_at", nullable=True),
        _ts("rewarded_at", nullable=True),
        _ts("rejected_at", nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["inviter_user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["invitee_user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("invitee_user_id", name="uq_referrals_invitee"),
    )
    op.create_index("ix_referrals_inviter_status", "referrals", ["inviter_user_id", "status"])
    op.create_index("ix_referrals_status_created", "referrals", ["status", "created_at"])

    op.create_table(
        "leaderboard_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("period", sa.String(20), nullable=False),
        _ts("period_start", nullable=True),
        _ts("period_end", nullable=True),
        sa.Column("total_users", sa.Integer(), server_default="0"),
        _ts("generated_at", server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_leaderboard_snapshots_period_time", "leaderboard_snapshots",
        ["period", "generated_at"],
    )

    op.create_table(
        "leaderboard_rows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["snapshot_id"], ["leaderboard_snapshots.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("snapshot_id", "user_id", name="uq_leaderboard_rows_snapshot_user"),
    )
    op.create_index(
        "ix_leaderboard_rows_snapshot_rank", "leaderboard_rows", ["snapshot_id", "rank"]
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("timestamp", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"]
    )


def downgrade() -> None:
    for table in (
        "admin_log",
        "leaderboard_rows",
        "leaderboard_snapshots",
        "referrals",
        "quest_progress",
        "quests",
        "xp_ledger",
        "xp_rules",
        "events",
        "users",
    ):
        op.drop_table(table)
