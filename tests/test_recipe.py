from __future__ import annotations

import copy
from pathlib import Path

import pytest

from app.models.enums import AlertKindEnum, StageKindEnum
from app.services.recipe import (
    DosingRule,
    RecipeDefinition,
    RecipeError,
    RecipeRegistry,
    load_registry,
    parse_recipe,
)

MINIMAL = {
    "recipe_id": "QUEIJO_TESTE",
    "name": "Queijo Teste",
    "inputs": [{"id": "RENNET", "name": "Coalho", "unit": "ml", "dosing": {"mode": "per_20_liters", "value": 0.9}}],
    "stages": [
        {"id": 1, "name": "Recepção", "auto_complete": True},
        {"id": 2, "name": "Coalho", "doses": ["RENNET"]},
        {"id": 3, "name": "Fim", "type": "terminal"},
    ],
}


def _variant(**changes: object) -> dict:
    data = copy.deepcopy(MINIMAL)
    data.update(changes)
    return data


def test_packaged_catalog_loads(registry: RecipeRegistry) -> None:
    assert set(registry.cheese_types) == {"QUEIJO_NETE", "QUEIJO_MINAS_CURADO", "QUEIJO_COLONIAL"}
    assert registry.lookup("queijo_nete") is not None
    assert registry.get(" queijo_nete ") is not None
    assert registry.get("QUEIJO_COLONIAL") is None
    assert registry.lookup("QUEIJO_COLONIAL").available is False


def test_queijo_nete_structure(recipe: RecipeDefinition) -> None:
    assert [stage.id for stage in recipe.stages] == list(range(1, 21))
    assert recipe.last_stage.kind == StageKindEnum.terminal
    assert recipe.completed_stage_id == 21
    assert [stage.id for stage in recipe.auto_completed_stages()] == [1, 2]
    assert recipe.first_working_stage().id == 3

    loop = recipe.get_stage(15)
    assert loop is not None and loop.is_loop
    assert loop.canonical_required_inputs() == ["ph_value"]
    assert loop.resolve_key("ph") == "ph_value"
    assert recipe.get_stage(13).canonical_required_inputs() == ["initial_ph", "pieces_quantity"]
    assert recipe.get_stage(0) is None
    assert recipe.get_next_stage(20) is None


def test_calculate_inputs_rounds_half_up(recipe: RecipeDefinition) -> None:
    assert recipe.calculate_inputs(130) == {
        "FERMENT_LR": 65.0,
        "FERMENT_DX": 65.0,
        "FERMENT_KL": 6.5,
        "RENNET": 5.85,
    }
    assert recipe.calculate_inputs(100)["RENNET"] == 4.5
    assert DosingRule(mode="per_3_liters", value=1.0).quantity_for(10) == 3.33
    assert DosingRule(mode="per_2_liters", value=1.0).quantity_for(0.01) == 0.01


@pytest.mark.parametrize("volume", [7, 37, 100, 130, 257.5])
def test_calculate_inputs_scales_linearly(recipe: RecipeDefinition, volume: float) -> None:
    single = recipe.calculate_inputs(volume)
    doubled = recipe.calculate_inputs(volume * 2)

    assert doubled.keys() == single.keys()
    for input_id, quantity in single.items():
        assert doubled[input_id] == pytest.approx(quantity * 2, abs=0.015)


def test_unknown_dosing_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        DosingRule(mode="per_batch", value=1.0)
    with pytest.raises(ValueError):
        DosingRule(mode="per_0_liters", value=1.0)


def test_wait_specs(recipe: RecipeDefinition) -> None:
    blocking = recipe.wait_spec(recipe.get_stage(4))
    assert blocking is not None
    assert blocking.seconds == 1800
    assert blocking.kind == AlertKindEnum.timer

    loop = recipe.wait_spec(recipe.get_stage(15))
    assert loop is not None
    assert loop.seconds == 5400
    assert loop.kind == AlertKindEnum.loop_timeout

    assert recipe.wait_spec(recipe.get_stage(3)) is None
    assert recipe.wait_spec(recipe.get_stage(4), test_mode=True).seconds == 60
    assert recipe.wait_spec(recipe.get_stage(15), test_mode=True).seconds == 120


def test_durations_collapse_in_test_mode(recipe: RecipeDefinition) -> None:
    salting = recipe.get_stage(16)
    assert recipe.timer_minutes(salting) == 720
    assert recipe.timer_minutes(salting, test_mode=True) == 1.0
    assert recipe.interval_minutes(recipe.get_stage(15)) == 30
    assert recipe.reminder_minutes(recipe.get_stage(18)) == 1440
    assert recipe.loop_max_minutes(recipe.get_stage(15)) == 90
    assert recipe.loop_max_minutes(recipe.get_stage(14)) is None


def test_minimal_recipe_parses() -> None:
    recipe = parse_recipe(_variant())
    assert recipe.first_working_stage().id == 2
    assert recipe.calculate_inputs(40) == {"RENNET": 1.8}


@pytest.mark.parametrize(
    "stages",
    [
        [{"id": 1, "name": "A"}, {"id": 3, "name": "B", "type": "terminal"}],
        [{"id": 1, "name": "A", "type": "terminal"}, {"id": 2, "name": "B", "type": "terminal"}],
        [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}],
        [{"id": 1, "name": "A", "type": "loop"}, {"id": 2, "name": "B", "type": "terminal"}],
        [
            {"id": 1, "name": "A", "loop_condition": {"key": "ph", "operator": "<=", "threshold": 5.2}},
            {"id": 2, "name": "B", "type": "terminal"},
        ],
        [{"id": 1, "name": "A", "doses": ["FERMENT_XX"]}, {"id": 2, "name": "B", "type": "terminal"}],
        [],
    ],
)
def test_malformed_recipes_raise(stages: list[dict]) -> None:
    with pytest.raises(RecipeError):
        parse_recipe(_variant(stages=stages))


def test_unknown_loop_operator_raises() -> None:
    stages = [
        {"id": 1, "name": "A", "type": "loop", "loop_condition": {"key": "ph", "operator": "~", "threshold": 5}},
        {"id": 2, "name": "B", "type": "terminal"},
    ]
    with pytest.raises(RecipeError):
        parse_recipe(_variant(stages=stages))


def test_input_type_pointing_past_last_stage_raises() -> None:
    with pytest.raises(RecipeError):
        parse_recipe(_variant(time_inputs={"flocculation": {"key": "flocculation_time", "stage": 9}}))


def test_registry_rejects_available_type_without_recipe(tmp_path: Path) -> None:
    (tmp_path / "catalog.yml").write_text("cheese_types:\n  QUEIJO_X:\n    name: X\n    available: true\n")
    with pytest.raises(RecipeError):
        load_registry(tmp_path)


def test_registry_rejects_mismatched_recipe_id(tmp_path: Path) -> None:
    (tmp_path / "catalog.yml").write_text(
        "cheese_types:\n  QUEIJO_X:\n    name: X\n    available: true\n    recipe_file: x.yml\n"
    )
    (tmp_path / "x.yml").write_text(
        "recipe_id: QUEIJO_Y\nname: Y\nstages:\n  - {id: 1, name: A}\n  - {id: 2, name: B, type: terminal}\n"
    )
    with pytest.raises(RecipeError):
        load_registry(tmp_path)


def test_registry_rejects_unreadable_yaml(tmp_path: Path) -> None:
    (tmp_path / "catalog.yml").write_text("cheese_types: [unclosed\n")
    with pytest.raises(RecipeError):
        load_registry(tmp_path)
