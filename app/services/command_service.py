"""Voice command execution: interpret, then dispatch to the workflow services.

The interpreter only proposes an intent; every state change still goes
through ``BatchService`` / ``StageEngine`` and their gates.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from app.config import Settings, get_settings
from app.schemas.batch import BatchRecord
from app.schemas.commands import CommandIntent, CommandResponse, InterpretedCommand
from app.schemas.payloads import StagePayload
from app.schemas.results import OperationResult
from app.services import payloads
from app.services.alert_coordinator import NotificationContext
from app.services.batch_service import BatchService
from app.services.errors import ErrorCode, StageGateError
from app.services.interpreter_service import InterpreterService
from app.services.recipe import RecipeDefinition
from app.services.stage_engine import StageEngine

logger = structlog.get_logger("cheese.commands")


class CommandService:
	def __init__(
		self,
		batches: BatchService,
		engine: StageEngine,
		interpreter: InterpreterService | None = None,
		settings: Settings | None = None,
	):
		self.batches = batches
		self.engine = engine
		self.settings = settings or get_settings()
		self.interpreter = interpreter or InterpreterService(self.settings)

	async def execute(
		self,
		text: str,
		batch_id: uuid.UUID | None = None,
		context: NotificationContext | None = None,
	) -> CommandResponse:
		command = await self.interpreter.interpret(text)
		logger.info("command_interpreted", intent=command.intent.value, confidence=command.confidence)

		if command.intent == CommandIntent.unknown or command.confidence < self.settings.command_min_confidence:
			batch = await self._resolve_batch(batch_id)
			return CommandResponse(
				intent=CommandIntent.unknown,
				confidence=command.confidence,
				batch_id=batch.id if batch else None,
				payload=payloads.clarify_payload(self._recipe(batch), batch),
			)
		if command.intent == CommandIntent.goodbye:
			return self._respond(command, payloads.goodbye_payload(), end_session=True)
		if command.intent == CommandIntent.start_batch:
			return await self._start(command, context)

		batch = await self._resolve_batch(batch_id)
		if command.intent == CommandIntent.help:
			return self._respond(command, payloads.help_payload(self._recipe(batch), batch), batch=batch)
		if batch is None:
			error = OperationResult.from_error(StageGateError(ErrorCode.batch_not_found, "Não há lote ativo no momento."))
			payload = payloads.error_payload(error)
			payload.allowed_utterances = ["iniciar novo lote com 130 litros, temperatura 32 graus, pH seis vírgula cinco"]
			return self._respond(command, payload, result=error)

		recipe = self._recipe(batch)
		if recipe is None:
			error = OperationResult.from_error(
				StageGateError(ErrorCode.invalid_stage, f"Receita {batch.recipe_id} não carregada")
			)
			return self._respond(command, payloads.error_payload(error), result=error, batch=batch)
		return await self._dispatch(command, batch, recipe, context)

	async def _dispatch(
		self,
		command: InterpretedCommand,
		batch: BatchRecord,
		recipe: RecipeDefinition,
		context: NotificationContext | None,
	) -> CommandResponse:
		entities = command.entities
		now = self.batches.clock()

		intent = command.intent
		if intent == CommandIntent.status:
			return self._respond(command, payloads.status_payload(recipe, batch, now), batch=batch)
		if intent == CommandIntent.instructions:
			payload = payloads.status_payload(recipe, batch, now, context="instructions")
			stage = recipe.get_stage(batch.current_stage_id)
			if stage is not None and stage.llm_guidance:
				payload.notes.append(f"Dica: {stage.llm_guidance}")
			return self._respond(command, payload, batch=batch)
		if intent == CommandIntent.timer:
			return self._respond(command, payloads.timer_payload(recipe, batch, now), batch=batch)
		if intent == CommandIntent.query_input:
			payload = payloads.query_input_payload(recipe, batch, entities.input_id or "")
			return self._respond(command, payload, batch=batch)
		if intent == CommandIntent.advance:
			result = await self.engine.advance(batch.id, context)
			return self._respond(command, payloads.advance_payload(recipe, result, self.batches.clock()), result, batch)
		if intent == CommandIntent.log_ph:
			result = await self.engine.log_value(batch.id, "ph", entities.ph_value, context)
			return self._respond(command, payloads.log_confirmation_payload(result), result, batch)
		if intent == CommandIntent.log_pieces:
			if entities.ph_value is not None:
				result = await self.engine.log_value(batch.id, "ph", entities.ph_value, context)
				if not result.success:
					return self._respond(command, payloads.log_confirmation_payload(result), result, batch)
			result = await self.engine.log_value(batch.id, "pieces_quantity", entities.pieces_quantity, context)
			return self._respond(command, payloads.log_confirmation_payload(result), result, batch)
		if intent == CommandIntent.log_temperature:
			result = await self.engine.log_value(batch.id, "current_temperature", entities.temperature, context)
			return self._respond(command, payloads.log_confirmation_payload(result), result, batch)
		if intent == CommandIntent.log_time:
			result = await self.engine.log_time_value(batch.id, entities.time_type or "", entities.time_value)
			return self._respond(command, payloads.log_confirmation_payload(result), result, batch)
		if intent == CommandIntent.log_date:
			result = await self.engine.log_date_value(batch.id, entities.date_type or "", entities.date_value)
			return self._respond(command, payloads.log_confirmation_payload(result), result, batch)
		if intent == CommandIntent.pause:
			result = await self.batches.pause(batch.id, entities.reason)
			return self._respond(command, self._lifecycle_payload(recipe, result), result, batch)
		if intent == CommandIntent.resume:
			result = await self.batches.resume(batch.id)
			return self._respond(command, self._lifecycle_payload(recipe, result), result, batch)
		return self._respond(command, payloads.clarify_payload(recipe, batch), batch=batch)

	async def _start(self, command: InterpretedCommand, context: NotificationContext | None) -> CommandResponse:
		entities = command.entities
		result = await self.batches.start(
			entities.volume,
			entities.temperature,
			entities.ph_value,
			recipe_id=entities.recipe_id,
			context=context,
		)
		recipe = self.batches.registry.get(result.batch.recipe_id) if result.batch else None
		return self._respond(command, payloads.start_payload(recipe, result), result, result.batch)

	def _lifecycle_payload(self, recipe: RecipeDefinition, result: OperationResult) -> StagePayload:
		if not result.success or result.batch is None:
			return payloads.error_payload(result, recipe, result.batch)
		return payloads.status_payload(recipe, result.batch, self.batches.clock())

	async def _resolve_batch(self, batch_id: uuid.UUID | None) -> BatchRecord | None:
		if batch_id is not None:
			return (await self.batches.get_batch(batch_id)).batch
		return await self.batches.get_active_batch(include_paused=True)

	def _recipe(self, batch: BatchRecord | None) -> RecipeDefinition | None:
		if batch is None:
			return None
		return self.batches.registry.get(batch.recipe_id)

	@staticmethod
	def _respond(
		command: InterpretedCommand,
		payload: StagePayload,
		result: OperationResult | None = None,
		batch: BatchRecord | None = None,
		*,
		end_session: bool = False,
	) -> CommandResponse:
		current = result.batch if result is not None and result.batch is not None else batch
		body: dict[str, Any] | None = None
		if result is not None:
			body = result.model_dump(mode="json", exclude={"batch"})
		return CommandResponse(
			intent=command.intent,
			confidence=command.confidence,
			batch_id=current.id if current else None,
			result=body,
			payload=payload,
			end_session=end_session,
		)
