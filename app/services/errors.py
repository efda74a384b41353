"""Stable error codes and the internal gating exception of the workflow services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
	# referential integrity
	batch_not_found = "BATCH_NOT_FOUND"
	invalid_stage = "INVALID_STAGE"
	reminder_not_found = "REMINDER_NOT_FOUND"
	measurement_not_found = "MEASUREMENT_NOT_FOUND"
	# caller input
	missing_fields = "MISSING_REQUIRED_FIELDS"
	invalid_cheese_type = "INVALID_CHEESE_TYPE"
	cheese_type_unavailable = "CHEESE_TYPE_UNAVAILABLE"
	missing_reason = "MISSING_REASON"
	invalid_input_key = "INVALID_INPUT_KEY"
	invalid_value = "INVALID_VALUE"
	invalid_time_type = "INVALID_TIME_TYPE"
	invalid_date_type = "INVALID_DATE_TYPE"
	# business-rule gating
	validation_failed = "VALIDATION_FAILED"
	timer_not_elapsed = "TIMER_NOT_ELAPSED"
	loop_condition_not_met = "LOOP_CONDITION_NOT_MET"
	# data integrity
	blocking_timer_missing = "BLOCKING_TIMER_MISSING"
	# lifecycle
	invalid_status_transition = "INVALID_STATUS_TRANSITION"
	batch_not_active = "BATCH_NOT_ACTIVE"
	concurrent_update = "CONCURRENT_UPDATE"


NOT_FOUND_CODES = frozenset(
	{
		ErrorCode.batch_not_found,
		ErrorCode.reminder_not_found,
		ErrorCode.measurement_not_found,
	}
)


@dataclass(eq=False)
class StageGateError(Exception):
	"""Raised inside a service operation; folded into an OperationResult at its boundary."""

	code: ErrorCode
	message: str
	details: dict[str, Any] = field(default_factory=dict)

	def __post_init__(self) -> None:
		super().__init__(self.message)


class ConcurrentUpdateError(RuntimeError):
	"""Raised by a repository when the stored version no longer matches."""
