"""ORM model registry: importing this module registers every table on Base.metadata.

Alembic ``env.py`` imports ``Base`` from here (not from ``base.py``) so that
autogenerate sees all tables.  Application code can also do::

    from app.models import ProductionBatch, BatchLog
"""

# ── Base & Mixins ───────────────────────────────────────────────────────────
from app.models.base import (
    AppendOnlyMixin,
    Base,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
    VersionedMixin,
)

# ── Batch models ────────────────────────────────────────────────────────────
from app.models.batch import BatchLog, ProductionBatch

# ── Enums ───────────────────────────────────────────────────────────────────
from app.models.enums import (
    AlertKindEnum,
    BatchStatusEnum,
    HistoryActionEnum,
    LifecycleTagEnum,
    LoopExitReasonEnum,
    ReminderKindEnum,
    StageKindEnum,
)

__all__ = [
    "AlertKindEnum",
    "AppendOnlyMixin",
    # Base & mixins
    "Base",
    "BatchLog",
    # Enums
    "BatchStatusEnum",
    "HistoryActionEnum",
    "LifecycleTagEnum",
    "LoopExitReasonEnum",
    # Batch
    "ProductionBatch",
    "ReminderKindEnum",
    "StageKindEnum",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "VersionedMixin",
]
