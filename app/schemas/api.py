"""Pydantic request/response bodies for the batch routes.

Measured values are accepted as numbers or as the raw spoken string; the
workflow services run them through the normalizers.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from app.schemas.batch import BatchRecord, Reminder
from app.services.alert_coordinator import NotificationContext

RawValue = float | str


class StartBatchRequest(BaseModel):
	milk_volume_l: RawValue | None = None
	milk_temperature_c: RawValue | None = None
	milk_ph: RawValue | None = None
	recipe_id: str | None = Field(default=None, max_length=64)
	notification: NotificationContext | None = None


class AdvanceRequest(BaseModel):
	notification: NotificationContext | None = None


class PauseRequest(BaseModel):
	reason: str | None = Field(default=None, max_length=500)


class CompleteRequest(BaseModel):
	notification: NotificationContext | None = None


class CancelRequest(BaseModel):
	reason: str | None = Field(default=None, max_length=500)
	notification: NotificationContext | None = None


class LogInputRequest(BaseModel):
	key: str = Field(min_length=1, max_length=64)
	value: RawValue | None = None
	notes: str | None = Field(default=None, max_length=500)
	notification: NotificationContext | None = None


class LogTimeRequest(BaseModel):
	time_type: str = Field(min_length=1, max_length=64)
	value: str = Field(min_length=1, max_length=64)


class LogDateRequest(BaseModel):
	date_type: str = Field(min_length=1, max_length=64)
	value: str = Field(min_length=1, max_length=64)


class CorrectionRequest(BaseModel):
	key: str = Field(min_length=1, max_length=64)
	value: RawValue
	reason: str | None = Field(default=None, max_length=500)


class BatchListRead(BaseModel):
	items: list[BatchRecord] = Field(default_factory=list)


class ReminderListRead(BaseModel):
	reminders: list[Reminder] = Field(default_factory=list)
	due: list[Reminder] = Field(default_factory=list)
