"""Stage advance engine: gates forward progress and owns measurement writes.

``advance`` short-circuits on the first failing gate, in order: loop exit,
required inputs, blocking timer.  A passing advance is persisted as a single
versioned write that drops the left stage's timers and reminders, arms the
next stage's, and records the alert bookkeeping.

Logging a value never advances; callers compose "log then advance" so a
failed advance leaves the logged value visible.
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime, timedelta
from typing import Any

import structlog

from app.models.enums import BatchStatusEnum, HistoryActionEnum, LifecycleTagEnum, LoopExitReasonEnum
from app.schemas.batch import BatchRecord, DateValue, HistoryEntry, MeasurementValue, NumberValue, TextValue, TimeValue
from app.schemas.results import AdvanceResult, LogValueResult, ReminderAckResult, StageRef, TimersResult
from app.services import timers
from app.services.alert_coordinator import AlertSync, NotificationContext
from app.services.errors import ConcurrentUpdateError, ErrorCode, StageGateError
from app.services.normalization import build_measurement, normalizer_kind, parse_spoken_date, parse_spoken_time
from app.services.recipe import RecipeDefinition, Stage
from app.services.workflow import WorkflowService

logger = structlog.get_logger("cheese.engine")


class StageEngine(WorkflowService):
	# ── Advance ──────────────────────────────────────────────────────────

	async def advance(self, batch_id: uuid.UUID, context: NotificationContext | None = None) -> AdvanceResult:
		return await self._guarded(batch_id, AdvanceResult, "advance", lambda: self._advance(batch_id, context))

	async def _advance(self, batch_id: uuid.UUID, context: NotificationContext | None) -> AdvanceResult:
		batch, recipe, stage = await self._load(batch_id)
		self._require_active(batch)
		now = self.clock()

		fields: dict[str, Any] = {}
		exit_reason = self._check_loop_exit(batch, recipe, stage, now) if stage.is_loop else None
		if exit_reason is not None:
			fields = self._measurement_fields(
				batch,
				[
					self._entry("loop_exit_reason", TextValue(value=exit_reason.value), stage.id, now),
					self._entry(
						"turning_cycles_count",
						NumberValue(value=float(batch.turning_cycles_count)),
						stage.id,
						now,
					),
				],
			)

		self._check_required_inputs(batch, stage)
		self._check_blocking_timer(batch, recipe, stage)

		next_stage = recipe.get_next_stage(stage.id)
		remaining_timers = [timer for timer in batch.active_timers if timer.stage_id != stage.id]
		remaining_reminders = [item for item in batch.active_reminders if item.stage_id != stage.id]
		history = [*batch.history, HistoryEntry(stage_id=stage.id, action=HistoryActionEnum.complete, timestamp=now)]

		if next_stage is None:
			fields.update(
				status=BatchStatusEnum.completed,
				completed_at=now,
				current_stage_id=recipe.completed_stage_id,
				active_timers=remaining_timers,
				active_reminders=remaining_reminders,
				history=history,
				scheduled_alerts=await self.alerts.cancel_all(context, batch.scheduled_alerts),
			)
			updated = await self._save(
				batch,
				fields,
				action="complete",
				stage_id=stage.id,
				details={"from": stage.id, "terminal": True, "loop_exit_reason": exit_reason},
			)
			logger.info("batch_completed", batch_id=str(batch.id), stage_id=stage.id)
			return AdvanceResult(success=True, batch=updated, completed=True)

		timer = timers.build_stage_timer(recipe, next_stage, now, self.test_mode)
		if timer is not None:
			remaining_timers.append(timer)
		remaining_reminders.extend(timers.build_stage_reminders(recipe, next_stage, now, self.test_mode))
		history.append(HistoryEntry(stage_id=next_stage.id, action=HistoryActionEnum.start, timestamp=now))

		fields.update(
			current_stage_id=next_stage.id,
			active_timers=remaining_timers,
			active_reminders=remaining_reminders,
			history=history,
		)
		if next_stage.id == recipe.last_stage.id and batch.maturation_end_date is not None:
			if batch.maturation_end_date <= self._local_date(now):
				fields["lifecycle_tag"] = LifecycleTagEnum.ready_for_sale

		sync = await self.alerts.sync_stage_alert(
			context, batch, recipe, stage.id, next_stage, batch.scheduled_alerts
		)
		fields["scheduled_alerts"] = sync.scheduled_alerts
		updated = await self._save_with_alerts(
			batch,
			fields,
			sync,
			context,
			action="advance",
			stage_id=next_stage.id,
			details={"from": stage.id, "to": next_stage.id, "loop_exit_reason": exit_reason},
		)
		logger.info(
			"stage_advanced",
			batch_id=str(batch.id),
			from_stage=stage.id,
			to_stage=next_stage.id,
			reminder_scheduled=sync.reminder_scheduled,
		)
		return AdvanceResult(
			success=True,
			batch=updated,
			next_stage=StageRef(id=next_stage.id, name=next_stage.name),
			reminder_scheduled=sync.reminder_scheduled,
			needs_reminder_permission=sync.needs_permission,
			wait_seconds=sync.wait_seconds,
		)

	def _check_loop_exit(
		self,
		batch: BatchRecord,
		recipe: RecipeDefinition,
		stage: Stage,
		now: datetime,
	) -> LoopExitReasonEnum:
		condition = stage.loop_condition
		assert condition is not None
		key = stage.resolve_key(condition.key)
		measured = batch.latest_number(key)
		if condition.is_satisfied(measured):
			return LoopExitReasonEnum.value_reached

		max_minutes = recipe.loop_max_minutes(stage, self.test_mode)
		started_at = batch.stage_started_at(stage.id)
		elapsed_minutes = (now - started_at).total_seconds() / 60 if started_at else 0.0
		if max_minutes is not None and started_at is not None and elapsed_minutes >= max_minutes:
			return LoopExitReasonEnum.time_limit

		current = f"{condition.key} atual: {measured}" if measured is not None else f"{condition.key} ainda não medido"
		details: dict[str, Any] = {
			"key": key,
			"current_value": measured,
			"condition": condition.describe(),
			"elapsed_minutes": round(elapsed_minutes, 1),
		}
		if max_minutes is not None:
			details["max_minutes"] = max_minutes
			details["remaining_minutes"] = max(0, math.ceil(max_minutes - elapsed_minutes))
		raise StageGateError(
			ErrorCode.loop_condition_not_met,
			f"Condição {condition.describe()} não atingida ({current})",
			details,
		)

	@staticmethod
	def _check_required_inputs(batch: BatchRecord, stage: Stage) -> None:
		missing = [key for key in stage.canonical_required_inputs() if key not in batch.measurements]
		if missing:
			raise StageGateError(
				ErrorCode.validation_failed,
				f"Faltam dados obrigatórios: {', '.join(missing)}",
				{"missing": missing},
			)

	def _check_blocking_timer(self, batch: BatchRecord, recipe: RecipeDefinition, stage: Stage) -> None:
		if stage.timer is None or not stage.timer.blocking or recipe.timer_minutes(stage, self.test_mode) <= 0:
			return
		timer = next((item for item in batch.active_timers if item.stage_id == stage.id and item.blocking), None)
		if timer is None:
			raise StageGateError(
				ErrorCode.blocking_timer_missing,
				f"Timer obrigatório da etapa {stage.id} não encontrado",
				{"stage_id": stage.id},
			)
		status = timers.evaluate_timer(timer, self.clock())
		if not status.is_complete:
			remaining = math.ceil(status.remaining_seconds / 60)
			raise StageGateError(
				ErrorCode.timer_not_elapsed,
				f"Aguarde o timer. Faltam {remaining} minutos.",
				{"remaining_minutes": remaining, "remaining_seconds": status.remaining_seconds, "timer_id": timer.id},
			)

	async def _save_with_alerts(
		self,
		batch: BatchRecord,
		fields: dict[str, Any],
		sync: AlertSync,
		context: NotificationContext | None,
		**log: Any,
	) -> BatchRecord:
		try:
			return await self._save(batch, fields, **log)
		except ConcurrentUpdateError:
			created = set(sync.scheduled_alerts) - set(batch.scheduled_alerts)
			for key in created:
				await self.alerts.cancel(context, sync.scheduled_alerts[key].external_reminder_id)
			raise

	# ── Measurements ─────────────────────────────────────────────────────

	@staticmethod
	def _maturation_fields(
		batch: BatchRecord,
		recipe: RecipeDefinition,
		key: str,
		value: MeasurementValue,
	) -> tuple[dict[str, Any], date | None]:
		"""Chamber entry dates start the maturation clock: entry + ``maturation_days``."""
		if not isinstance(value, DateValue):
			return {}, None
		for spec in recipe.date_inputs.values():
			if spec.key == key and spec.maturation_days:
				end = value.value + timedelta(days=spec.maturation_days)
				fields: dict[str, Any] = {"chamber2_entry_date": value.value, "maturation_end_date": end}
				if batch.lifecycle_tag != LifecycleTagEnum.ready_for_sale:
					fields["lifecycle_tag"] = LifecycleTagEnum.maturing
				return fields, end
		return {}, None

	async def log_value(
		self,
		batch_id: uuid.UUID,
		key: str,
		raw: Any,
		context: NotificationContext | None = None,
		notes: str | None = None,
	) -> LogValueResult:
		return await self._guarded(
			batch_id,
			LogValueResult,
			"log_value",
			lambda: self._log_value(batch_id, key, raw, context, notes),
		)

	async def _log_value(
		self,
		batch_id: uuid.UUID,
		key: str,
		raw: Any,
		context: NotificationContext | None,
		notes: str | None,
	) -> LogValueResult:
		batch, recipe, stage = await self._load(batch_id)
		self._require_active(batch)
		now = self.clock()

		canonical = stage.resolve_key(key.strip().lower())
		accepted = stage.accepted_keys()
		if accepted and canonical not in accepted:
			raise StageGateError(
				ErrorCode.invalid_input_key,
				f"A etapa {stage.id} não espera o valor {canonical}",
				{"key": canonical, "accepted": sorted(accepted)},
			)

		value = build_measurement(canonical, raw, now=now, timezone=self.settings.timezone)
		if value is None:
			raise StageGateError(
				ErrorCode.invalid_value,
				f"Valor inválido para {canonical}: {raw!r}",
				{"key": canonical, "raw": str(raw), "kind": normalizer_kind(canonical)},
			)

		fields = self._measurement_fields(batch, [self._entry(canonical, value, stage.id, now, notes=notes)])
		maturation, maturation_end = self._maturation_fields(batch, recipe, canonical, value)
		fields.update(maturation)
		result = LogValueResult(success=True, key=canonical, value=value, maturation_end_date=maturation_end)

		condition = stage.loop_condition
		if stage.is_loop and condition is not None and canonical == stage.resolve_key(condition.key):
			cycles = batch.turning_cycles_count + 1
			fields["turning_cycles_count"] = cycles
			result.turning_cycles_count = cycles
			result.loop_condition_met = condition.is_satisfied(value.value if isinstance(value, NumberValue) else None)
			if not result.loop_condition_met:
				sync = await self.alerts.reschedule_loop_timeout(context, batch, recipe, stage, batch.scheduled_alerts)
				fields["scheduled_alerts"] = sync.scheduled_alerts
				result.reminder_scheduled = sync.reminder_scheduled
				result.needs_reminder_permission = sync.needs_permission

		result.batch = await self._save(
			batch,
			fields,
			action="log_value",
			stage_id=stage.id,
			details={"key": canonical, "input_key": key, "value": value.model_dump(mode="json")},
		)
		logger.info("value_logged", batch_id=str(batch.id), stage_id=stage.id, key=canonical)
		return result

	async def log_time_value(self, batch_id: uuid.UUID, time_type: str, raw: Any) -> LogValueResult:
		return await self._guarded(
			batch_id,
			LogValueResult,
			"log_time",
			lambda: self._log_time_value(batch_id, time_type, raw),
		)

	async def _log_time_value(self, batch_id: uuid.UUID, time_type: str, raw: Any) -> LogValueResult:
		batch, recipe, stage = await self._load(batch_id)
		self._require_active(batch)
		now = self.clock()

		spec = recipe.time_inputs.get(time_type.strip().lower())
		if spec is None:
			raise StageGateError(
				ErrorCode.invalid_time_type,
				f"Tipo de horário inválido: {time_type}",
				{"time_type": time_type, "accepted": sorted(recipe.time_inputs)},
			)
		if spec.stage != stage.id:
			logger.warning(
				"time_logged_out_of_stage",
				batch_id=str(batch.id),
				key=spec.key,
				expected_stage=spec.stage,
				current_stage=stage.id,
			)

		parsed = parse_spoken_time(raw, now=now, timezone=self.settings.timezone)
		if parsed is None:
			raise StageGateError(
				ErrorCode.invalid_value,
				f"Horário inválido: {raw!r}",
				{"key": spec.key, "raw": str(raw), "kind": "time"},
			)

		value = TimeValue(value=parsed)
		fields = self._measurement_fields(batch, [self._entry(spec.key, value, stage.id, now)])
		updated = await self._save(
			batch,
			fields,
			action="log_time",
			stage_id=stage.id,
			details={"time_type": time_type, "key": spec.key, "value": parsed},
		)
		return LogValueResult(success=True, batch=updated, key=spec.key, value=value)

	async def log_date_value(self, batch_id: uuid.UUID, date_type: str, raw: Any) -> LogValueResult:
		return await self._guarded(
			batch_id,
			LogValueResult,
			"log_date",
			lambda: self._log_date_value(batch_id, date_type, raw),
		)

	async def _log_date_value(self, batch_id: uuid.UUID, date_type: str, raw: Any) -> LogValueResult:
		batch, recipe, stage = await self._load(batch_id)
		self._require_active(batch)
		now = self.clock()

		spec = recipe.date_inputs.get(date_type.strip().lower())
		if spec is None:
			raise StageGateError(
				ErrorCode.invalid_date_type,
				f"Tipo de data inválido: {date_type}",
				{"date_type": date_type, "accepted": sorted(recipe.date_inputs)},
			)
		if spec.stage != stage.id:
			logger.warning(
				"date_logged_out_of_stage",
				batch_id=str(batch.id),
				key=spec.key,
				expected_stage=spec.stage,
				current_stage=stage.id,
			)

		parsed = parse_spoken_date(raw, today=self._local_date(now))
		if parsed is None:
			raise StageGateError(
				ErrorCode.invalid_value,
				f"Data inválida: {raw!r}",
				{"key": spec.key, "raw": str(raw), "kind": "date"},
			)

		value = DateValue(value=parsed)
		fields = self._measurement_fields(batch, [self._entry(spec.key, value, stage.id, now)])
		maturation, maturation_end = self._maturation_fields(batch, recipe, spec.key, value)
		fields.update(maturation)

		updated = await self._save(
			batch,
			fields,
			action="log_date",
			stage_id=stage.id,
			details={
				"date_type": date_type,
				"key": spec.key,
				"value": parsed.isoformat(),
				"maturation_end_date": maturation_end.isoformat() if maturation_end else None,
			},
		)
		logger.info("date_logged", batch_id=str(batch.id), key=spec.key, maturation_end_date=str(maturation_end))
		return LogValueResult(success=True, batch=updated, key=spec.key, value=value, maturation_end_date=maturation_end)

	async def correct_measurement(self, batch_id: uuid.UUID, key: str, raw: Any, reason: str | None) -> LogValueResult:
		return await self._guarded(
			batch_id,
			LogValueResult,
			"correct_measurement",
			lambda: self._correct_measurement(batch_id, key, raw, reason),
		)

	async def _correct_measurement(
		self,
		batch_id: uuid.UUID,
		key: str,
		raw: Any,
		reason: str | None,
	) -> LogValueResult:
		if not reason or not reason.strip():
			raise StageGateError(ErrorCode.missing_reason, "Informe o motivo da correção")
		batch, recipe, stage = await self._load(batch_id)
		self._require_active(batch)
		now = self.clock()

		canonical = key.strip().lower()
		if canonical not in batch.measurements:
			canonical = stage.resolve_key(canonical)
		prior_index = batch.latest_entry_index(canonical)
		if prior_index is None:
			raise StageGateError(
				ErrorCode.measurement_not_found,
				f"Nenhuma medição registrada para {canonical}",
				{"key": canonical},
			)

		value = build_measurement(canonical, raw, now=now, timezone=self.settings.timezone)
		if value is None:
			raise StageGateError(
				ErrorCode.invalid_value,
				f"Valor inválido para {canonical}: {raw!r}",
				{"key": canonical, "raw": str(raw), "kind": normalizer_kind(canonical)},
			)

		prior = batch.measurement_history[prior_index]
		entry = self._entry(canonical, value, prior.stage_id, now, supersedes=prior_index, notes=reason.strip())
		fields = self._measurement_fields(batch, [entry])
		maturation, maturation_end = self._maturation_fields(batch, recipe, canonical, value)
		fields.update(maturation)

		updated = await self._save(
			batch,
			fields,
			action="correct_measurement",
			stage_id=stage.id,
			details={
				"key": canonical,
				"supersedes": prior_index,
				"previous": prior.value.model_dump(mode="json"),
				"value": value.model_dump(mode="json"),
				"reason": reason.strip(),
			},
		)
		return LogValueResult(success=True, batch=updated, key=canonical, value=value, maturation_end_date=maturation_end)

	# ── Reminders / timers ───────────────────────────────────────────────

	async def acknowledge_reminder(self, batch_id: uuid.UUID, reminder_id: str) -> ReminderAckResult:
		return await self._guarded(
			batch_id,
			ReminderAckResult,
			"reminder_ack",
			lambda: self._acknowledge_reminder(batch_id, reminder_id),
		)

	async def _acknowledge_reminder(self, batch_id: uuid.UUID, reminder_id: str) -> ReminderAckResult:
		batch = await self._get(batch_id)
		reminders = list(batch.active_reminders)
		index = next((i for i, item in enumerate(reminders) if item.id == reminder_id), None)
		if index is None:
			raise StageGateError(
				ErrorCode.reminder_not_found,
				"Lembrete não encontrado",
				{"reminder_id": reminder_id},
			)

		reminders[index] = timers.acknowledge_reminder(reminders[index], self.clock())
		updated = await self._save(
			batch,
			{"active_reminders": reminders},
			action="reminder_ack",
			stage_id=batch.current_stage_id,
			details={"reminder_id": reminder_id, "reminder_kind": reminders[index].kind.value},
		)
		return ReminderAckResult(success=True, batch=updated, reminder=reminders[index])

	async def get_timers(self, batch_id: uuid.UUID) -> TimersResult:
		try:
			batch = await self._get(batch_id)
		except StageGateError as exc:
			return TimersResult.from_error(exc)
		now = self.clock()
		return TimersResult(success=True, timers=[timers.to_view(timer, now) for timer in batch.active_timers])
