"""Read-only cheese-type catalog and recipe routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.config import Settings, get_settings
from app.dependencies import get_registry
from app.schemas.recipe import CatalogRead, CheeseTypeRead, InputRead, RecipeRead, StageRead
from app.services.recipe import RecipeDefinition, RecipeRegistry, Stage

router = APIRouter(prefix="/recipes", tags=["recipes"])


def _not_found(message: str) -> HTTPException:
	return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": "not_found", "message": message})


def _to_stage_read(recipe: RecipeDefinition, stage: Stage, test_mode: bool = False) -> StageRead:
	return StageRead(
		id=stage.id,
		name=stage.name,
		kind=stage.kind,
		auto_complete=stage.auto_complete,
		required_inputs=stage.canonical_required_inputs(),
		doses=list(stage.doses),
		timer_minutes=recipe.timer_minutes(stage, test_mode) or None,
		blocking=bool(stage.timer and stage.timer.blocking),
		interval_minutes=recipe.interval_minutes(stage, test_mode) or None,
		loop_condition=stage.loop_condition.describe() if stage.loop_condition else None,
		max_loop_minutes=recipe.loop_max_minutes(stage, test_mode),
		instructions=list(stage.instructions),
		guidance=stage.llm_guidance,
	)


def _to_recipe_read(recipe: RecipeDefinition, test_mode: bool = False) -> RecipeRead:
	return RecipeRead(
		recipe_id=recipe.recipe_id,
		name=recipe.name,
		schema_version=recipe.schema_version,
		description=recipe.description,
		inputs=[
			InputRead(
				id=item.id,
				name=item.name,
				unit=item.unit,
				dosing_mode=item.dosing.mode if item.dosing else None,
				dosing_value=item.dosing.value if item.dosing else None,
			)
			for item in recipe.inputs
		],
		stages=[_to_stage_read(recipe, stage, test_mode) for stage in recipe.stages],
	)


def _get_recipe(registry: RecipeRegistry, recipe_id: str) -> RecipeDefinition:
	recipe = registry.get(recipe_id)
	if recipe is None:
		raise _not_found(f"Receita {recipe_id.upper()} não encontrada")
	return recipe


@router.get("", response_model=CatalogRead)
async def list_cheese_types(registry: RecipeRegistry = Depends(get_registry)) -> CatalogRead:
	return CatalogRead(
		items=[
			CheeseTypeRead(id=item.id, name=item.name, available=item.available)
			for item in registry.cheese_types.values()
		]
	)


@router.get("/{recipe_id}", response_model=RecipeRead)
async def get_recipe(
	recipe_id: str,
	registry: RecipeRegistry = Depends(get_registry),
	settings: Settings = Depends(get_settings),
) -> RecipeRead:
	return _to_recipe_read(_get_recipe(registry, recipe_id), settings.test_mode)


@router.get("/{recipe_id}/stages/{stage_id}", response_model=StageRead)
async def get_recipe_stage(
	recipe_id: str,
	stage_id: int,
	registry: RecipeRegistry = Depends(get_registry),
	settings: Settings = Depends(get_settings),
) -> StageRead:
	recipe = _get_recipe(registry, recipe_id)
	stage = recipe.get_stage(stage_id)
	if stage is None:
		raise _not_found(f"Etapa {stage_id} não existe em {recipe.recipe_id}")
	return _to_stage_read(recipe, stage, settings.test_mode)
