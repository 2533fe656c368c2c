"""Global transaction reference on events; waitlist table

Revision ID: 0002_tx_ref_waitlist
Revises: 0001_initial
Create Date: 2026-10-16 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "0002_tx_ref_waitlist"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Tie each on-chain transaction to one event; add the waitlist."""
    with op.batch_alter_table("events") as batch:
        batch.add_column(sa.Column("tx_ref", sa.String(120), nullable=True))
        batch.add_column(sa.Column("idempotency_key", sa.String(200), nullable=True))
        batch.create_unique_constraint("uq_events_tx_ref", ["tx_ref"])

    # Backfill from the denormalised columns; the oldest event keeps a
    # transaction that was recorded more than once
    op.execute(
        """
        UPDATE events SET tx_ref = CAST(chain_id AS VARCHAR) || ':' || LOWER(tx_hash)
        WHERE tx_hash IS NOT NULL AND chain_id IS NOT NULL
          AND id IN (
            SELECT MIN(id) FROM events
            WHERE tx_hash IS NOT NULL AND chain_id IS NOT NULL
            GROUP BY chain_id, LOWER(tx_hash)
          )
        """
    )

    op.create_table(
        "waitlist",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("wallet_address", sa.String(42), nullable=True),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("referred_by", sa.String(16), nullable=True),
        sa.Column("referral_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("wallet_address"),
        sa.UniqueConstraint("referral_code"),
        sa.CheckConstraint(
            "email IS NOT NULL OR wallet_address IS NOT NULL",
            name="ck_waitlist_contact",
        ),
    )
    op.create_index(
        "ix_waitlist_referral_count", "waitlist", [sa.text("referral_count DESC")]
    )
    op.create_index("ix_waitlist_status", "waitlist", ["status"])


def downgrade() -> None:
    op.drop_index("ix_waitlist_status", table_name="waitlist")
    op.drop_index("ix_waitlist_referral_count", table_name="waitlist")
    op.drop_table("waitlist")
    with op.batch_alter_table("events") as batch:
        batch.drop_constraint("uq_events_tx_ref", type_="unique")
        batch.drop_column("idempotency_key")
        batch.drop_column("tx_ref")
