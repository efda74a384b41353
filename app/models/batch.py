"""ProductionBatch and BatchLog ORM models.

A batch row carries the whole mutable workflow state of one production
run.  Stage-scoped collections (timers, reminders, scheduled alerts,
measurement history) live in JSONB columns and are validated into typed
models by ``app.services.repository`` on every read.  ``version`` backs the
optimistic-concurrency check on writes.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import (
    AppendOnlyMixin,
    Base,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
    VersionedMixin,
    jsonb_column,
)
from app.models.enums import BatchStatusEnum, LifecycleTagEnum

# ═══════════════════════════════════════════════════════════════════════════
# ProductionBatch
# ═══════════════════════════════════════════════════════════════════════════


class ProductionBatch(Base, UUIDPrimaryKeyMixin, TimestampMixin, VersionedMixin):
    """One production run moving through the stages of a recipe."""

    __tablename__ = "production_batches"
    __table_args__ = (
        Index("ix_production_batches_status_started", "status", "started_at"),
    )

    recipe_id: Mapped[str] = mapped_column(String(64), nullable=False)
    current_stage_id: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default=text("1")
    )
    milk_volume_l: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[BatchStatusEnum] = mapped_column(
        Enum(
            BatchStatusEnum,
            name="batch_status",
            create_constraint=False,
            native_enum=True,
        ),
        nullable=False,
        default=BatchStatusEnum.active,
        server_default=BatchStatusEnum.active.value,
    )
    lifecycle_tag: Mapped[LifecycleTagEnum] = mapped_column(
        Enum(
            LifecycleTagEnum,
            name="lifecycle_tag",
            create_constraint=False,
            native_enum=True,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=LifecycleTagEnum.in_production,
        server_default=LifecycleTagEnum.in_production.value,
    )

    # ── Workflow state (JSONB) ───────────────────────────────────────────
    calculated_inputs: Mapped[dict] = jsonb_column({})
    measurements: Mapped[dict] = jsonb_column({})
    measurement_history: Mapped[list] = jsonb_column([])
    active_timers: Mapped[list] = jsonb_column([])
    active_reminders: Mapped[list] = jsonb_column([])
    scheduled_alerts: Mapped[dict] = jsonb_column({})
    history: Mapped[list] = jsonb_column([])
    turning_cycles_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    # ── Operational state ────────────────────────────────────────────────
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pause_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    chamber2_entry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    maturation_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    def __repr__(self) -> str:
        return (
            f"<ProductionBatch id={self.id} recipe={self.recipe_id} "
            f"stage={self.current_stage_id} status={self.status}>"
        )


# ═══════════════════════════════════════════════════════════════════════════
# BatchLog
# ═══════════════════════════════════════════════════════════════════════════


class BatchLog(Base, AppendOnlyMixin):
    """Action log entry: one row per successful batch mutation."""

    __tablename__ = "batch_logs"
    __table_args__ = (
        Index("ix_batch_logs_batch_ts", "batch_id", "timestamp"),
    )

    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict] = jsonb_column({})

    def __repr__(self) -> str:
        return (
            f"<BatchLog id={self.id} batch={self.batch_id} "
            f"stage={self.stage_id} action={self.action!r}>"
        )
