"""Structured payload builders for the speech/response rendering layer."""

from __future__ import annotations

from datetime import datetime

from app.models.enums import BatchStatusEnum
from app.schemas.batch import BatchRecord, DateValue, MeasurementValue
from app.schemas.payloads import (
	BatchInfo,
	DoseInfo,
	LoggedValue,
	QueryResult,
	StagePayload,
	TimerInfo,
)
from app.schemas.results import AdvanceResult, LogValueResult, OperationResult, StageRef, StartBatchResult
from app.services import timers
from app.services.recipe import RecipeDefinition, Stage

DEFAULT_UTTERANCES = ["qual é o status", "diga instruções", "avançar etapa"]

VALUE_LABELS = {
	"flocculation_time": "horário de floculação",
	"cut_point_time": "horário do ponto de corte",
	"press_start_time": "horário de início da prensa",
	"ph_value": "pH",
	"initial_ph": "pH",
	"milk_ph": "pH do leite",
	"pieces_quantity": "quantidade de peças",
	"chamber_2_entry_date": "data de entrada na câmara 2",
	"milk_temperature_c": "temperatura do leite",
	"current_temperature": "temperatura",
	"milk_volume_l": "volume de leite",
}

INPUT_UTTERANCES = {
	"flocculation_time": "registrar horário de floculação",
	"cut_point_time": "registrar horário de corte",
	"press_start_time": "registrar horário da prensa",
	"initial_ph": "registrar pH",
	"ph_value": "registrar pH",
	"pieces_quantity": "registrar quantidade de peças",
	"chamber_2_entry_date": "registrar data de entrada na câmara",
}


def _ref(stage: Stage | None) -> StageRef | None:
	return StageRef(id=stage.id, name=stage.name) if stage else None


def stage_doses(recipe: RecipeDefinition, stage: Stage, calculated_inputs: dict[str, float]) -> dict[str, DoseInfo]:
	return {
		input_id: DoseInfo(value=calculated_inputs[input_id], unit=recipe.input_unit(input_id))
		for input_id in stage.doses
		if input_id in calculated_inputs
	}


def contextual_utterances(stage: Stage, batch: BatchRecord) -> list[str]:
	utterances = ["qual é o status", "diga instruções"]
	if batch.status == BatchStatusEnum.paused:
		utterances.append("retomar lote")
		return utterances
	for key in stage.canonical_required_inputs():
		if key not in batch.measurements:
			utterances.append(INPUT_UTTERANCES.get(key, f"registrar {VALUE_LABELS.get(key, key)}"))
			return utterances
	utterances.append("avançar etapa")
	return utterances


def _timer_infos(batch: BatchRecord, now: datetime) -> list[TimerInfo]:
	return [
		TimerInfo(
			description=timer.description,
			blocking=timer.blocking,
			remaining_minutes=timers.remaining_minutes(timer, now),
		)
		for timer in batch.active_timers
	]


# ── Builders ────────────────────────────────────────────────────────────────


def status_payload(
	recipe: RecipeDefinition,
	batch: BatchRecord,
	now: datetime,
	context: str = "status",
) -> StagePayload:
	stage = recipe.get_stage(batch.current_stage_id)
	if stage is None:
		return StagePayload(
			context="status",
			notes=[f"Lote {batch.status.value}"],
			allowed_utterances=["iniciar novo lote"],
		)
	notes: list[str] = []
	if batch.status == BatchStatusEnum.paused:
		notes.append(f"Lote pausado{': ' + batch.pause_reason if batch.pause_reason else ''}")
	due = timers.due_reminders(batch.active_reminders, now)
	notes.extend(reminder.description for reminder in due)
	return StagePayload(
		context=context,
		stage=_ref(stage),
		instructions=list(stage.instructions),
		doses=stage_doses(recipe, stage, batch.calculated_inputs),
		timers=_timer_infos(batch, now),
		allowed_utterances=contextual_utterances(stage, batch),
		notes=notes,
	)


def advance_payload(recipe: RecipeDefinition, result: AdvanceResult, now: datetime) -> StagePayload:
	if not result.success:
		return error_payload(result, recipe, result.batch)
	if result.completed or result.batch is None or result.next_stage is None:
		return StagePayload(
			context="advance",
			notes=[f"Lote finalizado. Todas as {len(recipe.stages)} etapas foram concluídas."],
			allowed_utterances=["qual é o status", "iniciar novo lote"],
		)

	batch = result.batch
	stage = recipe.get_stage(result.next_stage.id)
	assert stage is not None
	notes: list[str] = []
	if result.needs_reminder_permission:
		notes.append("Habilite as permissões de lembrete para receber o aviso quando o tempo acabar.")
	return StagePayload(
		context="advance",
		stage=_ref(stage),
		instructions=list(stage.instructions),
		doses=stage_doses(recipe, stage, batch.calculated_inputs),
		timers=[info for info, timer in zip(_timer_infos(batch, now), batch.active_timers) if timer.stage_id == stage.id],
		allowed_utterances=contextual_utterances(stage, batch),
		notes=notes,
	)


def start_payload(recipe: RecipeDefinition | None, result: StartBatchResult) -> StagePayload:
	if not result.success or result.batch is None or recipe is None:
		payload = error_payload(result)
		payload.notes = [VALUE_LABELS.get(key, key) for key in result.missing_fields]
		return payload
	batch = result.batch
	stage = recipe.get_stage(batch.current_stage_id)
	return StagePayload(
		context="start_batch",
		stage=_ref(stage),
		instructions=list(stage.instructions) if stage else [],
		doses={
			input_id: DoseInfo(value=value, unit=recipe.input_unit(input_id))
			for input_id, value in batch.calculated_inputs.items()
		},
		allowed_utterances=DEFAULT_UTTERANCES,
		batch_info=BatchInfo(milk_volume_l=batch.milk_volume_l, started_at=batch.started_at),
	)


def help_payload(recipe: RecipeDefinition | None = None, batch: BatchRecord | None = None) -> StagePayload:
	stage = recipe.get_stage(batch.current_stage_id) if recipe and batch else None
	return StagePayload(
		context="help",
		stage=_ref(stage),
		allowed_utterances=contextual_utterances(stage, batch) if stage and batch else DEFAULT_UTTERANCES,
	)


def error_payload(
	result: OperationResult,
	recipe: RecipeDefinition | None = None,
	batch: BatchRecord | None = None,
) -> StagePayload:
	stage = recipe.get_stage(batch.current_stage_id) if recipe and batch else None
	return StagePayload(
		context="error",
		stage=_ref(stage),
		error_code=result.code.value if result.code else None,
		error_message=result.message,
	)


def log_confirmation_payload(result: LogValueResult) -> StagePayload:
	if not result.success or result.key is None or result.value is None:
		return error_payload(result)

	key = result.key
	context = "log_value"
	if key.endswith("_time"):
		context = "log_time"
	elif key.endswith("_date"):
		context = "log_date"
	elif "ph" in key:
		context = "log_ph"

	notes: list[str] = []
	if result.loop_condition_met is False:
		notes.append("Condição de saída ainda não atingida")
	if result.turning_cycles_count is not None:
		notes.append(f"Viradas registradas: {result.turning_cycles_count}")
	if result.maturation_end_date is not None:
		notes.append(f"Maturação até {result.maturation_end_date.isoformat()}")
	return StagePayload(
		context=context,
		logged_value=LoggedValue(key=key, label=VALUE_LABELS.get(key, key), value=_plain(result.value)),
		notes=notes,
	)


def _plain(value: MeasurementValue):
	if isinstance(value, DateValue):
		return value.value.isoformat()
	return value.value


def query_input_payload(recipe: RecipeDefinition, batch: BatchRecord, input_id: str) -> StagePayload:
	key = input_id.strip().upper()
	if key not in batch.calculated_inputs:
		return StagePayload(
			context="error",
			error_code="INVALID_INPUT_KEY",
			error_message=f"Insumo desconhecido: {input_id}",
		)
	name = next((item.name for item in recipe.inputs if item.id == key), key)
	return StagePayload(
		context="query_input",
		query_result=QueryResult(
			input_id=key,
			label=name,
			value=batch.calculated_inputs[key],
			unit=recipe.input_unit(key),
		),
	)


def timer_payload(recipe: RecipeDefinition, batch: BatchRecord, now: datetime) -> StagePayload:
	stage = recipe.get_stage(batch.current_stage_id)
	running = [timer for timer in batch.active_timers if not timers.evaluate_timer(timer, now).is_complete]
	return StagePayload(
		context="timer",
		stage=_ref(stage),
		timers=_timer_infos(batch.model_copy(update={"active_timers": running}), now),
		notes=[] if running else ["Não há timer ativo no momento."],
	)


def clarify_payload(recipe: RecipeDefinition | None = None, batch: BatchRecord | None = None) -> StagePayload:
	payload = help_payload(recipe, batch)
	payload.context = "clarify"
	payload.notes = ["Não entendi o comando."]
	return payload


def goodbye_payload() -> StagePayload:
	return StagePayload(context="goodbye")
