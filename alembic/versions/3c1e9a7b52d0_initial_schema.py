"""initial_schema

Revision ID: 3c1e9a7b52d0
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the production_batches and batch_logs tables, the batch_status and
lifecycle_tag enum types, and their indexes.  Enables uuid-ossp for the
server-side UUID default.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1e9a7b52d0"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# ── Enum type names (PostgreSQL CREATE TYPE) ────────────────────────────────
ENUM_BATCH_STATUS = postgresql.ENUM(
    "active", "paused", "completed", "cancelled", name="batch_status", create_type=False
)
ENUM_LIFECYCLE_TAG = postgresql.ENUM(
    "IN_PRODUCTION", "MATURING", "READY_FOR_SALE", name="lifecycle_tag", create_type=False
)


def _jsonb(name: str, empty: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(),
        server_default=sa.text(f"'{empty}'::jsonb"),
        nullable=False,
    )


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── 1. Create enum types ────────────────────────────────────────────
    ENUM_BATCH_STATUS.create(op.get_bind(), checkfirst=True)
    ENUM_LIFECYCLE_TAG.create(op.get_bind(), checkfirst=True)

    # ── 2. Tables ───────────────────────────────────────────────────────

    # production_batches
    op.create_table(
        "production_batches",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("uuid_generate_v4()"),
            nullable=False,
        ),
        sa.Column("recipe_id", sa.String(64), nullable=False),
        sa.Column("current_stage_id", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("milk_volume_l", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "status",
            ENUM_BATCH_STATUS,
            server_default=sa.text("'active'"),
            nullable=False,
        ),
        sa.Column(
            "lifecycle_tag",
            ENUM_LIFECYCLE_TAG,
            server_default=sa.text("'IN_PRODUCTION'"),
            nullable=False,
        ),
        _jsonb("calculated_inputs", "{}"),
        _jsonb("measurements", "{}"),
        _jsonb("measurement_history", "[]"),
        _jsonb("active_timers", "[]"),
        _jsonb("active_reminders", "[]"),
        _jsonb("scheduled_alerts", "{}"),
        _jsonb("history", "[]"),
        sa.Column("turning_cycles_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("chamber2_entry_date", sa.Date(), nullable=True),
        sa.Column("maturation_end_date", sa.Date(), nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_production_batches_status_started",
        "production_batches",
        ["status", "started_at"],
    )

    # batch_logs
    op.create_table(
        "batch_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        _jsonb("details", "{}"),
        sa.ForeignKeyConstraint(["batch_id"], ["production_batches.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batch_logs_batch_ts", "batch_logs", ["batch_id", "timestamp"])


def downgrade() -> None:
    # ── Drop tables in reverse dependency order ─────────────────────────
    op.drop_index("ix_batch_logs_batch_ts", table_name="batch_logs")
    op.drop_table("batch_logs")
    op.drop_index("ix_production_batches_status_started", table_name="production_batches")
    op.drop_table("production_batches")

    # ── Drop enum types ─────────────────────────────────────────────────
    ENUM_LIFECYCLE_TAG.drop(op.get_bind(), checkfirst=True)
    ENUM_BATCH_STATUS.drop(op.get_bind(), checkfirst=True)
