from __future__ import annotations

import uuid
from datetime import date, timedelta

import pytest

from app.models.enums import BatchStatusEnum, HistoryActionEnum, LifecycleTagEnum
from app.schemas.batch import BatchRecord, DateValue, NumberValue, Reminder, TextValue, Timer, TimeValue
from app.services.batch_service import BatchService
from app.services.errors import ErrorCode, StageGateError
from app.services.stage_engine import StageEngine
from tests.conftest import START, InMemoryBatchRepository, MutableClock


async def _advance_ok(engine: StageEngine, batch_id: uuid.UUID) -> BatchRecord:
    result = await engine.advance(batch_id)
    assert result.success, result.message
    assert result.batch is not None
    return result.batch


@pytest.mark.asyncio
async def test_advance_free_stage_moves_forward(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    result = await engine.advance(started_batch.id)

    assert result.success is True
    assert result.next_stage is not None
    assert result.next_stage.id == 4
    assert result.batch.current_stage_id == 4
    assert result.batch.version == started_batch.version + 1
    assert [entry.action for entry in result.batch.history[-2:]] == [
        HistoryActionEnum.complete,
        HistoryActionEnum.start,
    ]
    assert repository.actions(started_batch.id) == ["start", "advance"]


@pytest.mark.asyncio
async def test_blocking_timer_gates_advance(
    engine: StageEngine,
    started_batch: BatchRecord,
    clock: MutableClock,
) -> None:
    at_four = await _advance_ok(engine, started_batch.id)
    timers = [timer for timer in at_four.active_timers if timer.stage_id == 4]
    assert len(timers) == 1
    assert timers[0].blocking is True

    clock.advance(minutes=10)
    blocked = await engine.advance(started_batch.id)
    assert blocked.success is False
    assert blocked.code == ErrorCode.timer_not_elapsed
    assert blocked.details["remaining_minutes"] == 20

    clock.advance(minutes=20)
    at_five = await _advance_ok(engine, started_batch.id)
    assert at_five.current_stage_id == 5
    assert all(timer.stage_id != 4 for timer in at_five.active_timers)


@pytest.mark.asyncio
async def test_failed_gate_leaves_state_untouched(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    await _advance_ok(engine, started_batch.id)
    before = repository.batches[started_batch.id]

    result = await engine.advance(started_batch.id)

    assert result.success is False
    assert repository.batches[started_batch.id] == before
    assert repository.actions(started_batch.id) == ["start", "advance"]


@pytest.mark.asyncio
async def test_advance_leaves_other_stage_timers_and_reminders(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    other_timer = Timer(
        id="timer-other",
        stage_id=9,
        start_time=clock(),
        end_time=clock() + timedelta(hours=2),
        duration_minutes=120,
    )
    other_reminder = Reminder(
        id="reminder-other",
        stage_id=9,
        interval_minutes=1440,
        next_trigger=clock() + timedelta(days=1),
    )
    repository.place_at_stage(
        started_batch.id,
        3,
        clock(),
        active_timers=[other_timer],
        active_reminders=[other_reminder],
    )

    moved = await _advance_ok(engine, started_batch.id)

    assert moved.current_stage_id == 4
    assert other_timer in moved.active_timers
    assert [timer.stage_id for timer in moved.active_timers] == [9, 4]
    assert moved.active_reminders == [other_reminder]


def test_stage_gate_error_carries_message() -> None:
    error = StageGateError(ErrorCode.timer_not_elapsed, "Aguarde o timer", {"remaining_minutes": 3})

    assert str(error) == "Aguarde o timer"
    assert error.code == ErrorCode.timer_not_elapsed
    assert error.details == {"remaining_minutes": 3}
    assert len({error, error}) == 1


@pytest.mark.asyncio
async def test_missing_blocking_timer_is_reported(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 4, START)

    result = await engine.advance(started_batch.id)

    assert result.success is False
    assert result.code == ErrorCode.blocking_timer_missing


@pytest.mark.asyncio
async def test_non_blocking_timer_does_not_gate(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 10, START)
    moved = await _advance_ok(engine, started_batch.id)
    assert moved.current_stage_id == 11


@pytest.mark.asyncio
async def test_required_input_gates_advance(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 6, START)

    blocked = await engine.advance(started_batch.id)
    assert blocked.success is False
    assert blocked.code == ErrorCode.validation_failed
    assert blocked.details["missing"] == ["flocculation_time"]

    logged = await engine.log_time_value(started_batch.id, "flocculation", "dez e trinta")
    assert logged.success is True
    assert logged.key == "flocculation_time"
    assert logged.value == TimeValue(value="10:30")
    assert logged.batch.current_stage_id == 6

    moved = await _advance_ok(engine, started_batch.id)
    assert moved.current_stage_id == 7


@pytest.mark.asyncio
async def test_key_map_stores_under_canonical_key(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 13, START)

    ph = await engine.log_value(started_batch.id, "ph", "5 8")
    count = await engine.log_value(started_batch.id, "pieces_quantity", "doze")

    assert ph.key == "initial_ph"
    assert ph.value == NumberValue(value=5.8)
    assert count.batch.measurements["pieces_quantity"] == NumberValue(value=12.0)
    moved = await _advance_ok(engine, started_batch.id)
    assert moved.current_stage_id == 14


@pytest.mark.asyncio
async def test_log_value_rejects_unexpected_key_and_bad_value(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 13, START)

    wrong_key = await engine.log_value(started_batch.id, "flocculation_time", "10:30")
    assert wrong_key.code == ErrorCode.invalid_input_key

    bad_value = await engine.log_value(started_batch.id, "ph", "muito ácido")
    assert bad_value.code == ErrorCode.invalid_value
    assert "initial_ph" not in repository.batches[started_batch.id].measurements


@pytest.mark.asyncio
async def test_log_value_never_advances(engine: StageEngine, started_batch: BatchRecord) -> None:
    result = await engine.log_value(started_batch.id, "current_temperature", "33 graus")

    assert result.success is True
    assert result.batch.current_stage_id == started_batch.current_stage_id
    assert result.batch.measurements["current_temperature"] == NumberValue(value=33.0)


@pytest.mark.asyncio
async def test_log_time_rejects_unknown_type_and_bad_time(
    engine: StageEngine,
    started_batch: BatchRecord,
) -> None:
    unknown = await engine.log_time_value(started_batch.id, "lunch", "12:00")
    assert unknown.code == ErrorCode.invalid_time_type

    bad = await engine.log_time_value(started_batch.id, "cut", "quando deu")
    assert bad.code == ErrorCode.invalid_value


# ── Loop stage ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_loop_exits_when_value_reached(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    repository.place_at_stage(started_batch.id, 15, clock())

    first = await engine.log_value(started_batch.id, "ph", "5,6")
    assert first.key == "ph_value"
    assert first.turning_cycles_count == 1
    assert first.loop_condition_met is False

    blocked = await engine.advance(started_batch.id)
    assert blocked.code == ErrorCode.loop_condition_not_met
    assert blocked.details["current_value"] == 5.6
    assert blocked.details["remaining_minutes"] == 90

    clock.advance(minutes=30)
    second = await engine.log_value(started_batch.id, "ph", "5,1")
    assert second.turning_cycles_count == 2
    assert second.loop_condition_met is True

    moved = await _advance_ok(engine, started_batch.id)
    assert moved.current_stage_id == 16
    assert moved.measurements["loop_exit_reason"] == TextValue(value="value_reached")
    assert moved.measurements["turning_cycles_count"] == NumberValue(value=2.0)
    assert [entry.value.value for entry in moved.readings("ph_value", stage_id=15)] == [5.6, 5.1]


@pytest.mark.asyncio
async def test_loop_exits_on_time_limit(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    repository.place_at_stage(started_batch.id, 15, clock())
    await engine.log_value(started_batch.id, "ph", 5.7)

    clock.advance(minutes=89)
    still_looping = await engine.advance(started_batch.id)
    assert still_looping.code == ErrorCode.loop_condition_not_met
    assert still_looping.details["remaining_minutes"] == 1

    clock.advance(minutes=1)
    moved = await _advance_ok(engine, started_batch.id)
    assert moved.current_stage_id == 16
    assert moved.measurements["loop_exit_reason"] == TextValue(value="time_limit")
    assert any(entry.key == "loop_exit_reason" for entry in moved.measurement_history)


@pytest.mark.asyncio
async def test_loop_time_limit_still_requires_a_reading(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    repository.place_at_stage(started_batch.id, 15, clock())
    clock.advance(hours=2)

    result = await engine.advance(started_batch.id)

    assert result.code == ErrorCode.validation_failed
    assert result.details["missing"] == ["ph_value"]


@pytest.mark.asyncio
async def test_loop_ignores_initial_ph_from_earlier_stage(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 13, START)
    await engine.log_value(started_batch.id, "ph", 5.0)
    repository.place_at_stage(started_batch.id, 15, START)

    result = await engine.advance(started_batch.id)

    assert result.code == ErrorCode.loop_condition_not_met


@pytest.mark.asyncio
async def test_entering_loop_arms_interval_reminder(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 14, START)
    await engine.log_time_value(started_batch.id, "press", "11:00")

    moved = await _advance_ok(engine, started_batch.id)

    assert moved.current_stage_id == 15
    assert [reminder.stage_id for reminder in moved.active_reminders] == [15]
    assert moved.stage_started_at(15) == START


# ── Terminal / maturation ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_terminal_advance_completes_batch(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    repository.place_at_stage(started_batch.id, 20, START)

    result = await engine.advance(started_batch.id)

    assert result.success is True
    assert result.completed is True
    assert result.next_stage is None
    assert result.batch.status == BatchStatusEnum.completed
    assert result.batch.current_stage_id == 21
    assert result.batch.completed_at == clock()
    assert repository.actions(started_batch.id)[-1] == "complete"

    again = await engine.advance(started_batch.id)
    assert again.success is False
    assert again.code == ErrorCode.invalid_stage


@pytest.mark.asyncio
async def test_chamber_entry_sets_maturation_and_ready_for_sale(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 19, START)

    logged = await engine.log_date_value(started_batch.id, "chamber_2_entry", "01/12/2025")
    assert logged.success is True
    assert logged.value == DateValue(value=date(2025, 12, 1))
    assert logged.maturation_end_date == date(2026, 3, 1)
    assert logged.batch.lifecycle_tag == LifecycleTagEnum.maturing
    assert logged.batch.chamber2_entry_date == date(2025, 12, 1)

    moved = await _advance_ok(engine, started_batch.id)
    assert moved.current_stage_id == 20
    assert moved.lifecycle_tag == LifecycleTagEnum.ready_for_sale


@pytest.mark.asyncio
async def test_recent_chamber_entry_stays_maturing(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.place_at_stage(started_batch.id, 19, START)

    logged = await engine.log_date_value(started_batch.id, "chamber2", "hoje")
    assert logged.maturation_end_date == date(2026, 6, 8)

    moved = await _advance_ok(engine, started_batch.id)
    assert moved.lifecycle_tag == LifecycleTagEnum.maturing


@pytest.mark.asyncio
async def test_log_date_rejects_unknown_type(engine: StageEngine, started_batch: BatchRecord) -> None:
    result = await engine.log_date_value(started_batch.id, "chamber_9", "hoje")
    assert result.code == ErrorCode.invalid_date_type


# ── Corrections ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_correction_supersedes_latest_entry(
    engine: StageEngine,
    started_batch: BatchRecord,
) -> None:
    result = await engine.correct_measurement(started_batch.id, "milk_ph", "6,7", "leitura errada")

    assert result.success is True
    assert result.batch.measurements["milk_ph"] == NumberValue(value=6.7)
    readings = result.batch.readings("milk_ph")
    assert [entry.value.value for entry in readings] == [6.5, 6.7]
    assert readings[-1].supersedes == result.batch.measurement_history.index(readings[0])
    assert readings[-1].notes == "leitura errada"


@pytest.mark.asyncio
async def test_correction_requires_reason_and_prior_value(
    engine: StageEngine,
    started_batch: BatchRecord,
) -> None:
    no_reason = await engine.correct_measurement(started_batch.id, "milk_ph", "6,7", "  ")
    assert no_reason.code == ErrorCode.missing_reason

    nothing = await engine.correct_measurement(started_batch.id, "ph_value", "5,0", "erro")
    assert nothing.code == ErrorCode.measurement_not_found


# ── Lifecycle / concurrency guards ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_paused_batch_rejects_stage_operations(
    engine: StageEngine,
    batch_service: BatchService,
    started_batch: BatchRecord,
) -> None:
    await batch_service.pause(started_batch.id, "intervalo")

    advance = await engine.advance(started_batch.id)
    log = await engine.log_value(started_batch.id, "current_temperature", 30)

    assert advance.code == ErrorCode.batch_not_active
    assert log.code == ErrorCode.batch_not_active


@pytest.mark.asyncio
async def test_unknown_batch_is_not_found(engine: StageEngine) -> None:
    result = await engine.advance(uuid.uuid4())
    timers = await engine.get_timers(uuid.uuid4())

    assert result.code == ErrorCode.batch_not_found
    assert timers.code == ErrorCode.batch_not_found


@pytest.mark.asyncio
async def test_version_conflict_surfaces_as_concurrent_update(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
) -> None:
    repository.conflict_next_update = True

    result = await engine.advance(started_batch.id)

    assert result.success is False
    assert result.code == ErrorCode.concurrent_update
    assert repository.batches[started_batch.id].current_stage_id == 3


# ── Reminders / timers ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_acknowledge_reminder(
    engine: StageEngine,
    started_batch: BatchRecord,
    repository: InMemoryBatchRepository,
    clock: MutableClock,
) -> None:
    repository.place_at_stage(started_batch.id, 17, START)
    at_eighteen = await _advance_ok(engine, started_batch.id)
    reminder = at_eighteen.active_reminders[0]

    clock.advance(days=1, minutes=5)
    acked = await engine.acknowledge_reminder(started_batch.id, reminder.id)

    assert acked.success is True
    assert acked.reminder.last_acknowledged == clock()
    assert acked.reminder.next_trigger == clock() + timedelta(days=1)

    missing = await engine.acknowledge_reminder(started_batch.id, "reminder_nope")
    assert missing.code == ErrorCode.reminder_not_found


@pytest.mark.asyncio
async def test_get_timers_reports_remaining(
    engine: StageEngine,
    started_batch: BatchRecord,
    clock: MutableClock,
) -> None:
    await _advance_ok(engine, started_batch.id)
    clock.advance(minutes=12)

    result = await engine.get_timers(started_batch.id)

    assert result.success is True
    assert len(result.timers) == 1
    assert result.timers[0].remaining_seconds == 18 * 60
    assert result.timers[0].is_complete is False
