"""Pydantic response schemas for recipe and catalog reads."""

from __future__ import annotations

from pydantic import BaseModel, Field

from app.models.enums import StageKindEnum


class CheeseTypeRead(BaseModel):
	id: str
	name: str
	available: bool


class CatalogRead(BaseModel):
	items: list[CheeseTypeRead] = Field(default_factory=list)


class InputRead(BaseModel):
	id: str
	name: str
	unit: str
	dosing_mode: str | None = None
	dosing_value: float | None = None


class StageRead(BaseModel):
	id: int
	name: str
	kind: StageKindEnum
	auto_complete: bool
	required_inputs: list[str] = Field(default_factory=list)
	doses: list[str] = Field(default_factory=list)
	timer_minutes: float | None = None
	blocking: bool = False
	interval_minutes: float | None = None
	loop_condition: str | None = None
	max_loop_minutes: float | None = None
	instructions: list[str] = Field(default_factory=list)
	guidance: str | None = None


class RecipeRead(BaseModel):
	recipe_id: str
	name: str
	schema_version: str
	description: str | None = None
	inputs: list[InputRead] = Field(default_factory=list)
	stages: list[StageRead] = Field(default_factory=list)
