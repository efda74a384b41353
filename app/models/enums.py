"""Enum types shared by the ORM models and the workflow services.

``BatchStatusEnum`` and ``LifecycleTagEnum`` map 1:1 to PostgreSQL
``CREATE TYPE ... AS ENUM`` types; the remaining enums type JSONB payload
fields and are validated in Python only.
"""

from enum import StrEnum

# ── Batch lifecycle ─────────────────────────────────────────────────────────


class BatchStatusEnum(StrEnum):
    """Lifecycle status, orthogonal to stage progress."""

    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class LifecycleTagEnum(StrEnum):
    """Auxiliary maturation tag used by reporting."""

    in_production = "IN_PRODUCTION"
    maturing = "MATURING"
    ready_for_sale = "READY_FOR_SALE"


# ── Recipe structure ────────────────────────────────────────────────────────


class StageKindEnum(StrEnum):
    """How a stage participates in forward progress."""

    sequential = "sequential"
    loop = "loop"
    terminal = "terminal"


class ReminderKindEnum(StrEnum):
    """Recurring check-in cadence."""

    interval = "interval"
    daily = "daily"


class AlertKindEnum(StrEnum):
    """What an external wait notification is waiting for."""

    timer = "timer"
    loop_timeout = "loop_timeout"


# ── Audit ───────────────────────────────────────────────────────────────────


class HistoryActionEnum(StrEnum):
    """Stage history action."""

    start = "start"
    complete = "complete"


class LoopExitReasonEnum(StrEnum):
    """Which exit path released a loop stage."""

    value_reached = "value_reached"
    time_limit = "time_limit"
