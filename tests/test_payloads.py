from __future__ import annotations

from datetime import date, timedelta

import pytest

from app.schemas.batch import BatchRecord, DateValue, NumberValue, TimeValue
from app.schemas.results import LogValueResult, StartBatchResult
from app.services import payloads
from app.services.batch_service import BatchService
from app.services.errors import ErrorCode
from app.services.recipe import RecipeDefinition
from app.services.stage_engine import StageEngine
from tests.conftest import InMemoryBatchRepository, MutableClock


@pytest.mark.asyncio
async def test_start_payload_lists_every_dose(recipe: RecipeDefinition, started_batch: BatchRecord) -> None:
    payload = payloads.start_payload(recipe, StartBatchResult(success=True, batch=started_batch))

    assert payload.context == "start_batch"
    assert payload.stage.id == 3
    assert {key: dose.value for key, dose in payload.doses.items()} == {
        "FERMENT_LR": 50.0,
        "FERMENT_DX": 50.0,
        "FERMENT_KL": 5.0,
        "RENNET": 4.5,
    }
    assert payload.doses["RENNET"].unit == "ml"
    assert payload.batch_info.milk_volume_l == 100.0


def test_start_payload_error_names_missing_fields(recipe: RecipeDefinition) -> None:
    result = StartBatchResult(
        success=False,
        code=ErrorCode.missing_fields,
        message="Faltam dados",
        missing_fields=["milk_ph"],
    )

    payload = payloads.start_payload(recipe, result)

    assert payload.context == "error"
    assert payload.error_code == "MISSING_REQUIRED_FIELDS"
    assert payload.notes == ["pH do leite"]


@pytest.mark.asyncio
async def test_status_payload_shows_stage_doses_and_timer(
    recipe: RecipeDefinition,
    engine: StageEngine,
    started_batch: BatchRecord,
    clock: MutableClock,
) -> None:
    moved = (await engine.advance(started_batch.id)).batch
    clock.advance(minutes=5)

    payload = payloads.status_payload(recipe, moved, clock())

    assert payload.context == "status"
    assert payload.stage.id == 4
    assert set(payload.doses) == {"FERMENT_LR", "FERMENT_DX"}
    assert payload.timers[0].blocking is True
    assert payload.timers[0].remaining_minutes == 25
    assert payload.allowed_utterances[-1] == "avançar etapa"
    assert payload.instructions == list(recipe.get_stage(4).instructions)


@pytest.mark.asyncio
async def test_status_payload_offers_missing_input(
    recipe: RecipeDefinition,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    batch = repository.place_at_stage(started_batch.id, 6, clock())

    payload = payloads.status_payload(recipe, batch, clock())

    assert "registrar horário de floculação" in payload.allowed_utterances
    assert "avançar etapa" not in payload.allowed_utterances


@pytest.mark.asyncio
async def test_status_payload_for_paused_and_finished(
    recipe: RecipeDefinition,
    batch_service: BatchService,
    started_batch: BatchRecord,
    clock: MutableClock,
) -> None:
    paused = (await batch_service.pause(started_batch.id, "almoço")).batch
    payload = payloads.status_payload(recipe, paused, clock())
    assert payload.notes[0] == "Lote pausado: almoço"
    assert "retomar lote" in payload.allowed_utterances

    finished = paused.model_copy(update={"current_stage_id": recipe.completed_stage_id})
    done = payloads.status_payload(recipe, finished, clock())
    assert done.stage is None
    assert done.allowed_utterances == ["iniciar novo lote"]


@pytest.mark.asyncio
async def test_advance_payload(
    recipe: RecipeDefinition,
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    result = await engine.advance(started_batch.id)
    payload = payloads.advance_payload(recipe, result, clock())
    assert payload.context == "advance"
    assert payload.stage.id == 4
    assert len(payload.timers) == 1
    assert payload.notes == ["Habilite as permissões de lembrete para receber o aviso quando o tempo acabar."]

    blocked = await engine.advance(started_batch.id)
    error = payloads.advance_payload(recipe, blocked, clock())
    assert error.context == "error"
    assert error.error_code == "TIMER_NOT_ELAPSED"

    repository.place_at_stage(started_batch.id, 20, clock())
    finished = await engine.advance(started_batch.id)
    final = payloads.advance_payload(recipe, finished, clock())
    assert final.stage is None
    assert final.notes == ["Lote finalizado. Todas as 20 etapas foram concluídas."]


@pytest.mark.parametrize(
    ("key", "value", "context"),
    [
        ("ph_value", NumberValue(value=5.4), "log_ph"),
        ("flocculation_time", TimeValue(value="10:30"), "log_time"),
        ("chamber_2_entry_date", DateValue(value=date(2026, 3, 1)), "log_date"),
        ("pieces_quantity", NumberValue(value=12), "log_value"),
    ],
)
def test_log_confirmation_contexts(key: str, value, context: str) -> None:
    payload = payloads.log_confirmation_payload(LogValueResult(success=True, key=key, value=value))
    assert payload.context == context
    assert payload.logged_value.key == key


def test_log_confirmation_loop_notes() -> None:
    result = LogValueResult(
        success=True,
        key="ph_value",
        value=NumberValue(value=5.6),
        turning_cycles_count=3,
        loop_condition_met=False,
    )

    payload = payloads.log_confirmation_payload(result)

    assert payload.logged_value.label == "pH"
    assert payload.logged_value.value == 5.6
    assert payload.notes == ["Condição de saída ainda não atingida", "Viradas registradas: 3"]


@pytest.mark.asyncio
async def test_query_input_payload(recipe: RecipeDefinition, started_batch: BatchRecord) -> None:
    payload = payloads.query_input_payload(recipe, started_batch, "rennet")
    assert payload.context == "query_input"
    assert payload.query_result.label == "Coalho"
    assert payload.query_result.value == 4.5

    unknown = payloads.query_input_payload(recipe, started_batch, "salt")
    assert unknown.context == "error"
    assert unknown.error_code == "INVALID_INPUT_KEY"


@pytest.mark.asyncio
async def test_timer_payload_only_lists_running_timers(
    recipe: RecipeDefinition,
    engine: StageEngine,
    started_batch: BatchRecord,
    clock: MutableClock,
) -> None:
    moved = (await engine.advance(started_batch.id)).batch

    running = payloads.timer_payload(recipe, moved, clock() + timedelta(minutes=10))
    assert running.context == "timer"
    assert running.timers[0].remaining_minutes == 20

    elapsed = payloads.timer_payload(recipe, moved, clock() + timedelta(minutes=31))
    assert elapsed.timers == []
    assert elapsed.notes == ["Não há timer ativo no momento."]


@pytest.mark.asyncio
async def test_clarify_and_goodbye(recipe: RecipeDefinition, started_batch: BatchRecord) -> None:
    clarify = payloads.clarify_payload(recipe, started_batch)
    assert clarify.context == "clarify"
    assert clarify.stage.id == 3
    assert clarify.notes == ["Não entendi o comando."]

    assert payloads.clarify_payload().allowed_utterances == payloads.DEFAULT_UTTERANCES
    assert payloads.goodbye_payload().context == "goodbye"
