"""Batch lifecycle, stage progress and measurement routes."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable
from typing import TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies import get_batch_service, get_stage_engine
from app.schemas.api import (
	AdvanceRequest,
	BatchListRead,
	CancelRequest,
	CompleteRequest,
	CorrectionRequest,
	LogDateRequest,
	LogInputRequest,
	LogTimeRequest,
	PauseRequest,
	ReminderListRead,
	StartBatchRequest,
)
from app.schemas.batch import BatchRecord
from app.schemas.payloads import StagePayload
from app.schemas.results import (
	AdvanceResult,
	BatchLogsResult,
	BatchStatusResult,
	LogValueResult,
	OperationResult,
	ReminderAckResult,
	StartBatchResult,
	TimersResult,
)
from app.services import payloads
from app.services.batch_service import BatchService
from app.services.errors import NOT_FOUND_CODES, ErrorCode
from app.services.stage_engine import StageEngine

router = APIRouter(prefix="/batches", tags=["batches"])

ResultT = TypeVar("ResultT", bound=OperationResult)


def _map_error(outcome: OperationResult | Exception) -> HTTPException:
	if isinstance(outcome, Exception):
		return HTTPException(
			status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
			detail="Unexpected batch service failure",
		)
	detail = {
		"error": outcome.code.value if outcome.code else "unknown",
		"message": outcome.message,
		"details": outcome.details,
	}
	if outcome.code in NOT_FOUND_CODES:
		return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
	if outcome.code == ErrorCode.concurrent_update:
		return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
	return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


async def _run(call: Awaitable[ResultT]) -> ResultT:
	try:
		result = await call
	except Exception as exc:
		raise _map_error(exc) from exc
	if not result.success:
		raise _map_error(result)
	return result


# ── Lifecycle ───────────────────────────────────────────────────────────────


@router.post("", response_model=StartBatchResult, status_code=status.HTTP_201_CREATED)
async def start_batch(
	payload: StartBatchRequest,
	service: BatchService = Depends(get_batch_service),
) -> StartBatchResult:
	return await _run(
		service.start(
			payload.milk_volume_l,
			payload.milk_temperature_c,
			payload.milk_ph,
			recipe_id=payload.recipe_id,
			context=payload.notification,
		)
	)


@router.get("", response_model=BatchListRead)
async def list_active_batches(service: BatchService = Depends(get_batch_service)) -> BatchListRead:
	try:
		batches = await service.list_active_batches()
	except Exception as exc:
		raise _map_error(exc) from exc
	return BatchListRead(items=batches)


@router.get("/active", response_model=BatchRecord)
async def get_active_batch(service: BatchService = Depends(get_batch_service)) -> BatchRecord:
	try:
		batch = await service.get_active_batch()
	except Exception as exc:
		raise _map_error(exc) from exc
	if batch is None:
		raise HTTPException(
			status_code=status.HTTP_404_NOT_FOUND,
			detail={"error": ErrorCode.batch_not_found.value, "message": "Não há lote ativo", "details": {}},
		)
	return batch


@router.get("/{batch_id}", response_model=BatchRecord)
async def get_batch(batch_id: uuid.UUID, service: BatchService = Depends(get_batch_service)) -> BatchRecord:
	result = await _run(service.get_batch(batch_id))
	assert result.batch is not None
	return result.batch


@router.get("/{batch_id}/status", response_model=BatchStatusResult)
async def get_batch_status(
	batch_id: uuid.UUID,
	service: BatchService = Depends(get_batch_service),
) -> BatchStatusResult:
	return await _run(service.get_status(batch_id))


@router.get("/{batch_id}/stage", response_model=StagePayload)
async def get_current_stage(
	batch_id: uuid.UUID,
	service: BatchService = Depends(get_batch_service),
) -> StagePayload:
	result = await _run(service.get_batch(batch_id))
	batch = result.batch
	assert batch is not None
	recipe = service.registry.get(batch.recipe_id)
	if recipe is None:
		raise HTTPException(
			status_code=status.HTTP_400_BAD_REQUEST,
			detail={"error": ErrorCode.invalid_stage.value, "message": f"Receita {batch.recipe_id} não carregada", "details": {}},
		)
	return payloads.status_payload(recipe, batch, service.clock(), context="instructions")


@router.post("/{batch_id}/pause", response_model=OperationResult)
async def pause_batch(
	batch_id: uuid.UUID,
	payload: PauseRequest | None = None,
	service: BatchService = Depends(get_batch_service),
) -> OperationResult:
	reason = payload.reason if payload else None
	return await _run(service.pause(batch_id, reason))


@router.post("/{batch_id}/resume", response_model=OperationResult)
async def resume_batch(batch_id: uuid.UUID, service: BatchService = Depends(get_batch_service)) -> OperationResult:
	return await _run(service.resume(batch_id))


@router.post("/{batch_id}/complete", response_model=OperationResult)
async def complete_batch(
	batch_id: uuid.UUID,
	payload: CompleteRequest | None = None,
	service: BatchService = Depends(get_batch_service),
) -> OperationResult:
	return await _run(service.complete(batch_id, payload.notification if payload else None))


@router.post("/{batch_id}/cancel", response_model=OperationResult)
async def cancel_batch(
	batch_id: uuid.UUID,
	payload: CancelRequest,
	service: BatchService = Depends(get_batch_service),
) -> OperationResult:
	return await _run(service.cancel(batch_id, payload.reason, payload.notification))


@router.get("/{batch_id}/logs", response_model=BatchLogsResult)
async def list_batch_logs(
	batch_id: uuid.UUID,
	limit: int = Query(default=200, ge=1, le=1000),
	service: BatchService = Depends(get_batch_service),
) -> BatchLogsResult:
	return await _run(service.list_logs(batch_id, limit=limit))


# ── Stage progress ──────────────────────────────────────────────────────────


@router.post("/{batch_id}/advance", response_model=AdvanceResult)
async def advance_batch(
	batch_id: uuid.UUID,
	payload: AdvanceRequest | None = None,
	engine: StageEngine = Depends(get_stage_engine),
) -> AdvanceResult:
	return await _run(engine.advance(batch_id, payload.notification if payload else None))


@router.get("/{batch_id}/timers", response_model=TimersResult)
async def get_batch_timers(batch_id: uuid.UUID, engine: StageEngine = Depends(get_stage_engine)) -> TimersResult:
	return await _run(engine.get_timers(batch_id))


@router.get("/{batch_id}/reminders", response_model=ReminderListRead)
async def get_batch_reminders(
	batch_id: uuid.UUID,
	service: BatchService = Depends(get_batch_service),
) -> ReminderListRead:
	result = await _run(service.get_status(batch_id))
	return ReminderListRead(reminders=result.reminders, due=result.due_reminders)


@router.post("/{batch_id}/reminders/{reminder_id}/ack", response_model=ReminderAckResult)
async def acknowledge_reminder(
	batch_id: uuid.UUID,
	reminder_id: str,
	engine: StageEngine = Depends(get_stage_engine),
) -> ReminderAckResult:
	return await _run(engine.acknowledge_reminder(batch_id, reminder_id))


# ── Measurements ────────────────────────────────────────────────────────────


@router.post("/{batch_id}/inputs", response_model=LogValueResult)
async def log_input(
	batch_id: uuid.UUID,
	payload: LogInputRequest,
	engine: StageEngine = Depends(get_stage_engine),
) -> LogValueResult:
	return await _run(engine.log_value(batch_id, payload.key, payload.value, payload.notification, payload.notes))


@router.post("/{batch_id}/inputs/time", response_model=LogValueResult)
async def log_time_input(
	batch_id: uuid.UUID,
	payload: LogTimeRequest,
	engine: StageEngine = Depends(get_stage_engine),
) -> LogValueResult:
	return await _run(engine.log_time_value(batch_id, payload.time_type, payload.value))


@router.post("/{batch_id}/inputs/date", response_model=LogValueResult)
async def log_date_input(
	batch_id: uuid.UUID,
	payload: LogDateRequest,
	engine: StageEngine = Depends(get_stage_engine),
) -> LogValueResult:
	return await _run(engine.log_date_value(batch_id, payload.date_type, payload.value))


@router.post("/{batch_id}/corrections", response_model=LogValueResult)
async def correct_measurement(
	batch_id: uuid.UUID,
	payload: CorrectionRequest,
	engine: StageEngine = Depends(get_stage_engine),
) -> LogValueResult:
	return await _run(engine.correct_measurement(batch_id, payload.key, payload.value, payload.reason))
