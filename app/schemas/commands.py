"""Pydantic schemas for the voice command endpoint."""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from app.schemas.payloads import StagePayload


class CommandIntent(StrEnum):
	status = "status"
	start_batch = "start_batch"
	advance = "advance"
	log_ph = "log_ph"
	log_time = "log_time"
	log_date = "log_date"
	log_temperature = "log_temperature"
	log_pieces = "log_pieces"
	pause = "pause"
	resume = "resume"
	instructions = "instructions"
	help = "help"
	goodbye = "goodbye"
	timer = "timer"
	query_input = "query_input"
	unknown = "unknown"


class CommandEntities(BaseModel):
	volume: float | None = None
	temperature: float | None = None
	ph_value: float | None = None
	pieces_quantity: int | None = None
	time_value: str | None = None
	time_type: str | None = None
	date_value: str | None = None
	date_type: str | None = None
	input_id: str | None = None
	reason: str | None = None
	recipe_id: str | None = None


class InterpretedCommand(BaseModel):
	intent: CommandIntent = CommandIntent.unknown
	confidence: float = Field(default=0.0, ge=0.0, le=1.0)
	entities: CommandEntities = Field(default_factory=CommandEntities)

	@classmethod
	def unknown(cls) -> InterpretedCommand:
		return cls(intent=CommandIntent.unknown, confidence=0.0)


class CommandRequest(BaseModel):
	text: str = Field(max_length=2000)
	batch_id: uuid.UUID | None = None
	envelope: dict[str, Any] | None = None


class CommandResponse(BaseModel):
	intent: CommandIntent
	confidence: float = Field(ge=0.0, le=1.0)
	batch_id: uuid.UUID | None = None
	result: dict[str, Any] | None = None
	payload: StagePayload
	end_session: bool = False
