"""Discriminated operation results returned by the workflow services."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from app.schemas.batch import BatchLogEntry, BatchRecord, MeasurementValue, Reminder
from app.services.errors import ErrorCode, StageGateError


class StageRef(BaseModel):
	id: int
	name: str


class OperationResult(BaseModel):
	success: bool
	code: ErrorCode | None = None
	message: str | None = None
	details: dict[str, Any] = Field(default_factory=dict)
	batch: BatchRecord | None = None

	@classmethod
	def from_error(cls, exc: StageGateError, **extra: Any):
		return cls(success=False, code=exc.code, message=exc.message, details=exc.details, **extra)


class StartBatchResult(OperationResult):
	missing_fields: list[str] = Field(default_factory=list)


class AdvanceResult(OperationResult):
	completed: bool = False
	next_stage: StageRef | None = None
	reminder_scheduled: bool = False
	needs_reminder_permission: bool = False
	wait_seconds: int | None = None


class LogValueResult(OperationResult):
	key: str | None = None
	value: MeasurementValue | None = None
	turning_cycles_count: int | None = None
	loop_condition_met: bool | None = None
	maturation_end_date: date | None = None
	reminder_scheduled: bool = False
	needs_reminder_permission: bool = False


class ReminderAckResult(OperationResult):
	reminder: Reminder | None = None


class TimerView(BaseModel):
	id: str
	stage_id: int
	description: str
	blocking: bool
	start_time: datetime
	end_time: datetime
	duration_minutes: float
	is_complete: bool
	remaining_seconds: int


class TimersResult(OperationResult):
	timers: list[TimerView] = Field(default_factory=list)


class BatchStatusResult(OperationResult):
	stage: StageRef | None = None
	timers: list[TimerView] = Field(default_factory=list)
	reminders: list[Reminder] = Field(default_factory=list)
	due_reminders: list[Reminder] = Field(default_factory=list)
	calculated_inputs: dict[str, float] = Field(default_factory=dict)
	next_action: str | None = None
	guidance: str | None = None


class BatchLogsResult(OperationResult):
	logs: list[BatchLogEntry] = Field(default_factory=list)
