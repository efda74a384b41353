"""Timer and reminder evaluation.

Nothing here schedules anything.  Completeness is a pure function of the
stored timestamps and the ``now`` passed in, so any process can answer
"is this timer done" from persisted state alone.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable

from app.models.enums import ReminderKindEnum
from app.schemas.batch import Reminder, Timer
from app.schemas.results import TimerView
from app.services.recipe import RecipeDefinition, Stage

Clock = Callable[[], datetime]


def utc_now() -> datetime:
	return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class TimerStatus:
	is_complete: bool
	remaining_seconds: int


def _new_id(prefix: str) -> str:
	return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _format_minutes(minutes: float) -> str:
	if minutes >= 60 and minutes % 60 == 0:
		hours = int(minutes // 60)
		return f"{hours} hora" if hours == 1 else f"{hours} horas"
	whole = int(minutes) if float(minutes).is_integer() else minutes
	return f"{whole} minuto" if whole == 1 else f"{whole} minutos"


# ── Evaluation ──────────────────────────────────────────────────────────────


def evaluate_timer(timer: Timer, now: datetime) -> TimerStatus:
	remaining = (timer.end_time - now).total_seconds()
	return TimerStatus(
		is_complete=timer.end_time <= now,
		remaining_seconds=max(0, math.ceil(remaining)),
	)


def remaining_minutes(timer: Timer, now: datetime) -> int:
	return math.ceil(evaluate_timer(timer, now).remaining_seconds / 60)


def to_view(timer: Timer, now: datetime) -> TimerView:
	status = evaluate_timer(timer, now)
	return TimerView(
		**timer.model_dump(),
		is_complete=status.is_complete,
		remaining_seconds=status.remaining_seconds,
	)


def due_reminders(reminders: list[Reminder], now: datetime) -> list[Reminder]:
	return [item for item in reminders if not item.acknowledged and item.next_trigger <= now]


# ── Construction ────────────────────────────────────────────────────────────


def build_stage_timer(recipe: RecipeDefinition, stage: Stage, now: datetime, test_mode: bool = False) -> Timer | None:
	minutes = recipe.timer_minutes(stage, test_mode)
	if minutes <= 0:
		return None
	assert stage.timer is not None
	return Timer(
		id=_new_id("timer"),
		stage_id=stage.id,
		start_time=now,
		end_time=now + timedelta(minutes=minutes),
		duration_minutes=minutes,
		blocking=stage.timer.blocking,
		description=f"{stage.name}: {_format_minutes(minutes)}",
	)


def build_stage_reminders(
	recipe: RecipeDefinition,
	stage: Stage,
	now: datetime,
	test_mode: bool = False,
) -> list[Reminder]:
	reminders: list[Reminder] = []

	interval = recipe.interval_minutes(stage, test_mode)
	if interval > 0:
		subject = stage.loop_condition.key if stage.loop_condition else "etapa"
		reminders.append(
			Reminder(
				id=_new_id("reminder"),
				stage_id=stage.id,
				kind=ReminderKindEnum.interval,
				interval_minutes=interval,
				next_trigger=now + timedelta(minutes=interval),
				description=f"Verificar {subject} a cada {_format_minutes(interval)}",
			)
		)

	if stage.reminder is not None:
		minutes = recipe.reminder_minutes(stage, test_mode)
		reminders.append(
			Reminder(
				id=_new_id("reminder"),
				stage_id=stage.id,
				kind=stage.reminder.kind,
				interval_minutes=minutes,
				next_trigger=now + timedelta(minutes=minutes),
				description=stage.reminder.message or f"Lembrete da etapa {stage.id}",
			)
		)
	return reminders


def acknowledge_reminder(reminder: Reminder, now: datetime) -> Reminder:
	"""Acknowledge the current cycle; recurring reminders re-arm for the next one."""
	if reminder.interval_minutes:
		return reminder.model_copy(
			update={
				"acknowledged": False,
				"last_acknowledged": now,
				"next_trigger": now + timedelta(minutes=reminder.interval_minutes),
			}
		)
	return reminder.model_copy(update={"acknowledged": True, "last_acknowledged": now})
