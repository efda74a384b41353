"""Renderer-facing structured payloads: facts only, never narration."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.schemas.results import StageRef

PayloadContext = Literal[
	"status",
	"instructions",
	"advance",
	"start_batch",
	"help",
	"error",
	"query_input",
	"log_ph",
	"log_time",
	"log_date",
	"log_value",
	"clarify",
	"goodbye",
	"timer",
]


class DoseInfo(BaseModel):
	value: float
	unit: str


class TimerInfo(BaseModel):
	description: str
	blocking: bool
	remaining_minutes: int | None = None


class LoggedValue(BaseModel):
	key: str
	label: str
	value: Any


class QueryResult(BaseModel):
	input_id: str
	label: str
	value: float
	unit: str


class BatchInfo(BaseModel):
	milk_volume_l: float
	started_at: datetime


class StagePayload(BaseModel):
	context: PayloadContext
	stage: StageRef | None = None
	instructions: list[str] = Field(default_factory=list)
	doses: dict[str, DoseInfo] = Field(default_factory=dict)
	timers: list[TimerInfo] = Field(default_factory=list)
	allowed_utterances: list[str] = Field(default_factory=list)
	notes: list[str] = Field(default_factory=list)
	error_code: str | None = None
	error_message: str | None = None
	logged_value: LoggedValue | None = None
	query_result: QueryResult | None = None
	batch_info: BatchInfo | None = None
