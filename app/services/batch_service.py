"""Batch lifecycle: start / pause / resume / complete / cancel and status reads.

Lifecycle status is orthogonal to stage progress: these transitions never
move ``current_stage_id`` and the stage engine never changes status except
on the terminal advance.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog

from app.models.enums import BatchStatusEnum, HistoryActionEnum
from app.schemas.batch import BatchLogEntry, BatchRecord, HistoryEntry, NumberValue
from app.schemas.results import BatchLogsResult, BatchStatusResult, OperationResult, StageRef, StartBatchResult
from app.services import timers
from app.services.alert_coordinator import NotificationContext
from app.services.errors import ErrorCode, StageGateError
from app.services.normalization import normalize_ph, normalize_temperature, normalize_volume
from app.services.recipe import RecipeDefinition, Stage
from app.services.workflow import WorkflowService

logger = structlog.get_logger("cheese.batches")

_TERMINAL_STATUSES = frozenset({BatchStatusEnum.completed, BatchStatusEnum.cancelled})


class BatchService(WorkflowService):
	# ── Start ────────────────────────────────────────────────────────────

	async def start(
		self,
		milk_volume_l: Any,
		milk_temperature_c: Any,
		milk_ph: Any,
		recipe_id: str | None = None,
		context: NotificationContext | None = None,
	) -> StartBatchResult:
		try:
			return await self._start(milk_volume_l, milk_temperature_c, milk_ph, recipe_id, context)
		except StageGateError as exc:
			logger.info("start_rejected", code=exc.code.value, reason=exc.message)
			return StartBatchResult.from_error(exc, missing_fields=exc.details.get("missing", []))

	async def _start(
		self,
		milk_volume_l: Any,
		milk_temperature_c: Any,
		milk_ph: Any,
		recipe_id: str | None,
		context: NotificationContext | None,
	) -> StartBatchResult:
		intake = {
			"milk_volume_l": normalize_volume(milk_volume_l),
			"milk_temperature_c": normalize_temperature(milk_temperature_c),
			"milk_ph": normalize_ph(milk_ph),
		}
		missing = [key for key, value in intake.items() if value is None]
		if missing:
			raise StageGateError(
				ErrorCode.missing_fields,
				f"Faltam dados: {', '.join(missing)}",
				{"missing": missing},
			)

		recipe = self._resolve_recipe(recipe_id or self.settings.default_recipe_id)
		now = self.clock()
		volume = float(intake["milk_volume_l"])
		first = recipe.first_working_stage()
		skipped = recipe.auto_completed_stages()
		intake_stage_id = skipped[0].id if skipped else first.id

		record = BatchRecord(
			id=uuid.uuid4(),
			recipe_id=recipe.recipe_id.upper(),
			current_stage_id=first.id,
			milk_volume_l=volume,
			calculated_inputs=recipe.calculate_inputs(volume),
			started_at=now,
		)
		fields = self._measurement_fields(
			record,
			[
				self._entry(key, NumberValue(value=float(value)), intake_stage_id, now)
				for key, value in intake.items()
			],
		)
		history = [
			HistoryEntry(stage_id=stage.id, action=HistoryActionEnum.complete, timestamp=now, auto=True)
			for stage in skipped
		]
		history.append(HistoryEntry(stage_id=first.id, action=HistoryActionEnum.start, timestamp=now))
		timer = timers.build_stage_timer(recipe, first, now, self.test_mode)
		record = record.model_copy(
			update={
				**fields,
				"history": history,
				"active_timers": [timer] if timer else [],
				"active_reminders": timers.build_stage_reminders(recipe, first, now, self.test_mode),
			}
		)

		created = await self.repository.create_batch(record)
		wait = recipe.wait_spec(first, self.test_mode)
		if wait is not None and context is not None:
			sync = await self.alerts.schedule_wait(context, created, recipe, first, wait, created.scheduled_alerts)
			if sync.scheduled_alerts:
				created = await self.repository.update_batch(
					created.id,
					{"scheduled_alerts": sync.scheduled_alerts},
					created.version,
				)

		await self.repository.append_log(
			self._log_entry(
				created,
				first.id,
				"start",
				{**intake, "recipe_id": created.recipe_id, "calculated_inputs": created.calculated_inputs},
			)
		)
		logger.info(
			"batch_started",
			batch_id=str(created.id),
			recipe_id=created.recipe_id,
			stage_id=first.id,
			milk_volume_l=volume,
		)
		return StartBatchResult(success=True, batch=created)

	def _resolve_recipe(self, recipe_id: str) -> RecipeDefinition:
		cheese_type = self.registry.lookup(recipe_id)
		if cheese_type is None:
			raise StageGateError(
				ErrorCode.invalid_cheese_type,
				f"Tipo de queijo inválido: {recipe_id.upper()}",
				{"recipe_id": recipe_id.upper()},
			)
		recipe = self.registry.get(cheese_type.id)
		if not cheese_type.available or recipe is None:
			raise StageGateError(
				ErrorCode.cheese_type_unavailable,
				f"O queijo {cheese_type.name} ainda não está disponível.",
				{"recipe_id": cheese_type.id},
			)
		return recipe

	def _log_entry(self, batch: BatchRecord, stage_id: int, action: str, details: dict[str, Any]) -> BatchLogEntry:
		return BatchLogEntry(batch_id=batch.id, stage_id=stage_id, action=action, details=details, timestamp=self.clock())

	# ── Status transitions ───────────────────────────────────────────────

	async def pause(self, batch_id: uuid.UUID, reason: str | None = None) -> OperationResult:
		async def operation() -> OperationResult:
			batch = await self._get(batch_id)
			self._require_status(batch, {BatchStatusEnum.active}, "pausar")
			reason_text = reason.strip() if reason and reason.strip() else None
			updated = await self._save(
				batch,
				{"status": BatchStatusEnum.paused, "paused_at": self.clock(), "pause_reason": reason_text},
				action="pause",
				stage_id=batch.current_stage_id,
				details={"reason": reason_text},
			)
			logger.info("batch_paused", batch_id=str(batch_id), reason=reason_text)
			return OperationResult(success=True, batch=updated)

		return await self._guarded(batch_id, OperationResult, "pause", operation)

	async def resume(self, batch_id: uuid.UUID) -> OperationResult:
		async def operation() -> OperationResult:
			batch = await self._get(batch_id)
			self._require_status(batch, {BatchStatusEnum.paused}, "retomar")
			updated = await self._save(
				batch,
				{"status": BatchStatusEnum.active, "paused_at": None, "pause_reason": None},
				action="resume",
				stage_id=batch.current_stage_id,
				details={"paused_at": batch.paused_at.isoformat() if batch.paused_at else None},
			)
			logger.info("batch_resumed", batch_id=str(batch_id))
			return OperationResult(success=True, batch=updated)

		return await self._guarded(batch_id, OperationResult, "resume", operation)

	async def complete(self, batch_id: uuid.UUID, context: NotificationContext | None = None) -> OperationResult:
		async def operation() -> OperationResult:
			batch = await self._get(batch_id)
			self._require_not_finished(batch, "concluir")
			updated = await self._save(
				batch,
				{
					"status": BatchStatusEnum.completed,
					"completed_at": self.clock(),
					"scheduled_alerts": await self.alerts.cancel_all(context, batch.scheduled_alerts),
				},
				action="complete",
				stage_id=batch.current_stage_id,
				details={"manual": True},
			)
			logger.info("batch_completed", batch_id=str(batch_id), stage_id=batch.current_stage_id, manual=True)
			return OperationResult(success=True, batch=updated)

		return await self._guarded(batch_id, OperationResult, "complete", operation)

	async def cancel(
		self,
		batch_id: uuid.UUID,
		reason: str | None,
		context: NotificationContext | None = None,
	) -> OperationResult:
		async def operation() -> OperationResult:
			if not reason or not reason.strip():
				raise StageGateError(ErrorCode.missing_reason, "Informe o motivo do cancelamento")
			batch = await self._get(batch_id)
			self._require_not_finished(batch, "cancelar")
			updated = await self._save(
				batch,
				{
					"status": BatchStatusEnum.cancelled,
					"cancelled_at": self.clock(),
					"cancel_reason": reason.strip(),
					"scheduled_alerts": await self.alerts.cancel_all(context, batch.scheduled_alerts),
				},
				action="cancel",
				stage_id=batch.current_stage_id,
				details={"reason": reason.strip()},
			)
			logger.info("batch_cancelled", batch_id=str(batch_id), reason=reason.strip())
			return OperationResult(success=True, batch=updated)

		return await self._guarded(batch_id, OperationResult, "cancel", operation)

	@staticmethod
	def _require_status(batch: BatchRecord, allowed: set[BatchStatusEnum], verb: str) -> None:
		if batch.status not in allowed:
			raise StageGateError(
				ErrorCode.invalid_status_transition,
				f"Não é possível {verb} um lote com status {batch.status.value}",
				{"status": batch.status.value, "allowed": sorted(status.value for status in allowed)},
			)

	def _require_not_finished(self, batch: BatchRecord, verb: str) -> None:
		self._require_status(batch, set(BatchStatusEnum) - _TERMINAL_STATUSES, verb)

	# ── Reads ────────────────────────────────────────────────────────────

	async def get_batch(self, batch_id: uuid.UUID) -> OperationResult:
		try:
			return OperationResult(success=True, batch=await self._get(batch_id))
		except StageGateError as exc:
			return OperationResult.from_error(exc)

	async def list_logs(self, batch_id: uuid.UUID, limit: int = 200) -> BatchLogsResult:
		try:
			await self._get(batch_id)
		except StageGateError as exc:
			return BatchLogsResult.from_error(exc)
		return BatchLogsResult(success=True, logs=await self.repository.list_logs(batch_id, limit=limit))

	async def list_active_batches(self) -> list[BatchRecord]:
		return await self.repository.list_active()

	async def get_active_batch(self, include_paused: bool = False) -> BatchRecord | None:
		"""Most recently started batch still in production."""
		batches = await self.repository.list_active(include_paused=include_paused)
		if not batches:
			return None
		return max(batches, key=lambda batch: batch.started_at)

	async def get_status(self, batch_id: uuid.UUID) -> BatchStatusResult:
		try:
			batch = await self._get(batch_id)
			recipe = self._recipe_for(batch)
		except StageGateError as exc:
			return BatchStatusResult.from_error(exc)

		now = self.clock()
		stage = recipe.get_stage(batch.current_stage_id)
		views = [timers.to_view(timer, now) for timer in batch.active_timers]
		return BatchStatusResult(
			success=True,
			batch=batch,
			stage=StageRef(id=stage.id, name=stage.name) if stage else None,
			timers=views,
			reminders=batch.active_reminders,
			due_reminders=timers.due_reminders(batch.active_reminders, now),
			calculated_inputs=batch.calculated_inputs,
			next_action=self._next_action(batch, stage, now) if stage else None,
			guidance=(stage.llm_guidance or (stage.instructions[0] if stage.instructions else None)) if stage else None,
		)

	def _next_action(self, batch: BatchRecord, stage: Stage, now: datetime) -> str:
		if batch.status == BatchStatusEnum.paused:
			return "resume"
		if batch.status in _TERMINAL_STATUSES:
			return "none"
		missing = [key for key in stage.canonical_required_inputs() if key not in batch.measurements]
		if missing:
			return f"log_input:{missing[0]}"
		for timer in batch.active_timers:
			if timer.stage_id == stage.id and timer.blocking and not timers.evaluate_timer(timer, now).is_complete:
				return "wait_timer"
		if stage.is_loop and stage.loop_condition is not None:
			measured = batch.latest_number(stage.resolve_key(stage.loop_condition.key))
			if not stage.loop_condition.is_satisfied(measured):
				return f"log_input:{stage.resolve_key(stage.loop_condition.key)}"
		return "advance"
