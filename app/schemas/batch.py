"""Typed batch state: measurement variants, timers, reminders, alerts, history.

These models are the in-memory shape of a ``production_batches`` row.  JSONB
payloads are validated into them once at the repository boundary, so the
workflow services never re-check shapes they already trust.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from app.models.enums import (
	AlertKindEnum,
	BatchStatusEnum,
	HistoryActionEnum,
	LifecycleTagEnum,
	ReminderKindEnum,
)

# ── Measurement values ──────────────────────────────────────────────────────


class NumberValue(BaseModel):
	kind: Literal["number"] = "number"
	value: float


class TimeValue(BaseModel):
	kind: Literal["time"] = "time"
	value: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class DateValue(BaseModel):
	kind: Literal["date"] = "date"
	value: date


class TextValue(BaseModel):
	kind: Literal["text"] = "text"
	value: str


MeasurementValue = Annotated[
	NumberValue | TimeValue | DateValue | TextValue,
	Field(discriminator="kind"),
]


class MeasurementEntry(BaseModel):
	key: str
	value: MeasurementValue
	stage_id: int
	timestamp: datetime
	supersedes: int | None = None
	notes: str | None = None


# ── Timers, reminders, alerts ───────────────────────────────────────────────


class Timer(BaseModel):
	id: str
	stage_id: int
	start_time: datetime
	end_time: datetime
	duration_minutes: float
	blocking: bool = False
	description: str = ""


class Reminder(BaseModel):
	id: str
	stage_id: int
	kind: ReminderKindEnum = ReminderKindEnum.interval
	interval_minutes: float | None = None
	next_trigger: datetime
	acknowledged: bool = False
	last_acknowledged: datetime | None = None
	description: str = ""


class ScheduledAlert(BaseModel):
	external_reminder_id: str
	stage_id: int
	due_at: datetime
	kind: AlertKindEnum


class HistoryEntry(BaseModel):
	stage_id: int
	action: HistoryActionEnum
	timestamp: datetime
	auto: bool = False


# ── Batch ───────────────────────────────────────────────────────────────────


class BatchRecord(BaseModel):
	id: uuid.UUID
	recipe_id: str
	current_stage_id: int
	milk_volume_l: float
	status: BatchStatusEnum = BatchStatusEnum.active
	lifecycle_tag: LifecycleTagEnum = LifecycleTagEnum.in_production
	calculated_inputs: dict[str, float] = Field(default_factory=dict)
	measurements: dict[str, MeasurementValue] = Field(default_factory=dict)
	measurement_history: list[MeasurementEntry] = Field(default_factory=list)
	active_timers: list[Timer] = Field(default_factory=list)
	active_reminders: list[Reminder] = Field(default_factory=list)
	scheduled_alerts: dict[str, ScheduledAlert] = Field(default_factory=dict)
	history: list[HistoryEntry] = Field(default_factory=list)
	turning_cycles_count: int = 0
	paused_at: datetime | None = None
	pause_reason: str | None = None
	cancelled_at: datetime | None = None
	cancel_reason: str | None = None
	completed_at: datetime | None = None
	chamber2_entry_date: date | None = None
	maturation_end_date: date | None = None
	started_at: datetime
	updated_at: datetime | None = None
	version: int = 1

	def latest_number(self, key: str) -> float | None:
		value = self.measurements.get(key)
		if isinstance(value, NumberValue):
			return value.value
		return None

	def readings(self, key: str, stage_id: int | None = None) -> list[MeasurementEntry]:
		return [
			entry
			for entry in self.measurement_history
			if entry.key == key and (stage_id is None or entry.stage_id == stage_id)
		]

	def latest_entry_index(self, key: str) -> int | None:
		for index in range(len(self.measurement_history) - 1, -1, -1):
			if self.measurement_history[index].key == key:
				return index
		return None

	def stage_started_at(self, stage_id: int) -> datetime | None:
		for entry in reversed(self.history):
			if entry.stage_id == stage_id and entry.action == HistoryActionEnum.start:
				return entry.timestamp
		return None


class BatchLogEntry(BaseModel):
	batch_id: uuid.UUID
	stage_id: int
	action: str
	details: dict = Field(default_factory=dict)
	timestamp: datetime | None = None
