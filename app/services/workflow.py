"""Shared plumbing for the services that own batch writes.

``WorkflowService`` loads a batch with its recipe and stage, runs a mutating
operation under the per-batch lock, folds ``StageGateError`` into the
operation's result type and persists each mutation as one versioned write
followed by an action-log entry.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

import structlog

from app.config import Settings, get_settings
from app.models.enums import BatchStatusEnum
from app.schemas.batch import BatchLogEntry, BatchRecord, MeasurementEntry, MeasurementValue
from app.schemas.results import OperationResult
from app.services.alert_coordinator import AlertCoordinator, NotificationClient
from app.services.errors import ConcurrentUpdateError, ErrorCode, StageGateError
from app.services.locks import BatchLocks
from app.services.recipe import RecipeDefinition, RecipeRegistry, Stage
from app.services.repository import BatchRepository
from app.services.timers import Clock, utc_now

ResultT = TypeVar("ResultT", bound=OperationResult)

logger = structlog.get_logger("cheese.workflow")


class WorkflowService:
	def __init__(
		self,
		repository: BatchRepository,
		registry: RecipeRegistry,
		*,
		locks: BatchLocks | None = None,
		alerts: AlertCoordinator | None = None,
		clock: Clock = utc_now,
		settings: Settings | None = None,
	):
		self.repository = repository
		self.registry = registry
		self.settings = settings or get_settings()
		self.clock = clock
		self.locks = locks or BatchLocks()
		self.alerts = alerts or AlertCoordinator(NotificationClient(), clock=clock, test_mode=self.settings.test_mode)

	@property
	def test_mode(self) -> bool:
		return self.settings.test_mode

	def _local_date(self, now: datetime) -> date:
		return now.astimezone(ZoneInfo(self.settings.timezone)).date()

	# ── Loading / guards ─────────────────────────────────────────────────

	async def _get(self, batch_id: uuid.UUID) -> BatchRecord:
		batch = await self.repository.get_batch(batch_id)
		if batch is None:
			raise StageGateError(ErrorCode.batch_not_found, "Lote não encontrado", {"batch_id": str(batch_id)})
		return batch

	def _recipe_for(self, batch: BatchRecord) -> RecipeDefinition:
		recipe = self.registry.get(batch.recipe_id)
		if recipe is None:
			raise StageGateError(
				ErrorCode.invalid_stage,
				f"Receita {batch.recipe_id} não carregada",
				{"recipe_id": batch.recipe_id},
			)
		return recipe

	async def _load(self, batch_id: uuid.UUID) -> tuple[BatchRecord, RecipeDefinition, Stage]:
		batch = await self._get(batch_id)
		recipe = self._recipe_for(batch)
		stage = recipe.get_stage(batch.current_stage_id)
		if stage is None:
			raise StageGateError(
				ErrorCode.invalid_stage,
				"Etapa inválida",
				{"current_stage_id": batch.current_stage_id},
			)
		return batch, recipe, stage

	@staticmethod
	def _require_active(batch: BatchRecord) -> None:
		if batch.status != BatchStatusEnum.active:
			raise StageGateError(
				ErrorCode.batch_not_active,
				f"Lote está {batch.status.value}",
				{"status": batch.status.value},
			)

	async def _guarded(
		self,
		batch_id: uuid.UUID,
		result_type: type[ResultT],
		event: str,
		operation: Callable[[], Awaitable[ResultT]],
	) -> ResultT:
		try:
			async with self.locks.hold(batch_id):
				result = await operation()
				await self.repository.commit()
				return result
		except StageGateError as exc:
			log = logger.error if exc.code == ErrorCode.blocking_timer_missing else logger.info
			log(f"{event}_rejected", batch_id=str(batch_id), code=exc.code.value, reason=exc.message, details=exc.details)
			return result_type.from_error(exc)
		except ConcurrentUpdateError as exc:
			logger.warning(f"{event}_conflict", batch_id=str(batch_id), error=str(exc))
			return result_type.from_error(StageGateError(ErrorCode.concurrent_update, str(exc)))

	# ── Writes ───────────────────────────────────────────────────────────

	async def _save(
		self,
		batch: BatchRecord,
		fields: dict[str, Any],
		*,
		action: str,
		stage_id: int,
		details: dict[str, Any] | None = None,
	) -> BatchRecord:
		updated = await self.repository.update_batch(batch.id, fields, batch.version)
		await self.repository.append_log(
			BatchLogEntry(
				batch_id=batch.id,
				stage_id=stage_id,
				action=action,
				details=details or {},
				timestamp=self.clock(),
			)
		)
		return updated

	@staticmethod
	def _measurement_fields(
		batch: BatchRecord,
		entries: list[MeasurementEntry],
		fields: dict[str, Any] | None = None,
	) -> dict[str, Any]:
		"""Append ``entries`` to the history and refresh the latest-value cache in one field set."""
		fields = dict(fields or {})
		measurements: dict[str, MeasurementValue] = dict(fields.get("measurements", batch.measurements))
		history = list(fields.get("measurement_history", batch.measurement_history))
		for entry in entries:
			measurements[entry.key] = entry.value
			history.append(entry)
		fields["measurements"] = measurements
		fields["measurement_history"] = history
		return fields

	@staticmethod
	def _entry(
		key: str,
		value: MeasurementValue,
		stage_id: int,
		now: datetime,
		*,
		supersedes: int | None = None,
		notes: str | None = None,
	) -> MeasurementEntry:
		return MeasurementEntry(
			key=key,
			value=value,
			stage_id=stage_id,
			timestamp=now,
			supersedes=supersedes,
			notes=notes,
		)
