"""Recipe definitions: YAML loading, structural validation, dosing and wait specs.

A recipe is an immutable value: it is parsed once at startup into frozen
pydantic models and shared by reference between every service that needs
stage rules.  A malformed recipe raises ``RecipeError`` and must abort
startup.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.config import get_settings
from app.models.enums import AlertKindEnum, ReminderKindEnum, StageKindEnum

_DOSING_MODE = re.compile(r"^per_(\d+(?:\.\d+)?)_liters?$")
_FROZEN = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

_OPERATORS = {
	"<": operator.lt,
	"<=": operator.le,
	">": operator.gt,
	">=": operator.ge,
	"==": operator.eq,
}

TEST_MODE_TIMER_MINUTES = 1.0
TEST_MODE_INTERVAL_MINUTES = 1.0
TEST_MODE_LOOP_MAX_MINUTES = 2.0


class RecipeError(RuntimeError):
	"""Raised when a recipe or the cheese-type catalog is malformed."""


# ── Recipe parts ────────────────────────────────────────────────────────────


class TimerSpec(BaseModel):
	model_config = _FROZEN

	duration_min: float | None = Field(default=None, gt=0)
	duration_hours: float | None = Field(default=None, gt=0)
	blocking: bool = False
	interval_hours: float | None = Field(default=None, gt=0)

	@property
	def duration_minutes(self) -> float:
		if self.duration_min is not None:
			return self.duration_min
		if self.duration_hours is not None:
			return self.duration_hours * 60
		return 0.0


class ReminderSpec(BaseModel):
	model_config = _FROZEN

	kind: ReminderKindEnum = Field(default=ReminderKindEnum.interval, alias="type")
	interval_hours: float = Field(default=1.0, gt=0)
	message: str | None = None


class LoopCondition(BaseModel):
	"""``<key> <operator> <threshold>`` evaluated against the latest measurements."""

	model_config = _FROZEN

	key: str
	operator: Literal["<", "<=", ">", ">=", "=="]
	threshold: float

	def is_satisfied(self, value: float | None) -> bool:
		if value is None:
			return False
		return _OPERATORS[self.operator](value, self.threshold)

	def describe(self) -> str:
		return f"{self.key} {self.operator} {self.threshold}"


class DosingRule(BaseModel):
	model_config = _FROZEN

	mode: str
	value: float = Field(ge=0)

	@field_validator("mode")
	@classmethod
	def _known_mode(cls, mode: str) -> str:
		match = _DOSING_MODE.match(mode)
		if match is None or float(match.group(1)) <= 0:
			raise ValueError(f"unsupported dosing mode: {mode}")
		return mode

	@property
	def divisor(self) -> float:
		match = _DOSING_MODE.match(self.mode)
		assert match is not None
		return float(match.group(1))

	def quantity_for(self, volume_l: float) -> float:
		amount = Decimal(str(volume_l)) / Decimal(str(self.divisor)) * Decimal(str(self.value))
		return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class InputDefinition(BaseModel):
	model_config = _FROZEN

	id: str
	name: str
	unit: str
	dosing: DosingRule | None = None


class TimeInputSpec(BaseModel):
	model_config = _FROZEN

	key: str
	stage: int


class DateInputSpec(BaseModel):
	model_config = _FROZEN

	key: str
	stage: int
	maturation_days: int | None = Field(default=None, gt=0)


class Stage(BaseModel):
	model_config = _FROZEN

	id: int = Field(ge=1)
	name: str
	kind: StageKindEnum = Field(default=StageKindEnum.sequential, alias="type")
	auto_complete: bool = False
	required_inputs: tuple[str, ...] = Field(default=(), alias="operator_input_required")
	stored_values: tuple[str, ...] = ()
	system_actions: tuple[str, ...] = ()
	key_map: Mapping[str, str] = Field(default_factory=dict)
	doses: tuple[str, ...] = ()
	timer: TimerSpec | None = None
	reminder: ReminderSpec | None = None
	loop_condition: LoopCondition | None = None
	max_loop_duration_hours: float | None = Field(default=None, gt=0)
	instructions: tuple[str, ...] = ()
	llm_guidance: str | None = None

	@property
	def is_loop(self) -> bool:
		return self.kind == StageKindEnum.loop

	def resolve_key(self, key: str) -> str:
		"""Map a logical input key to the canonical key this stage stores it under."""
		return self.key_map.get(key, key)

	def canonical_required_inputs(self) -> list[str]:
		return [self.resolve_key(key) for key in self.required_inputs]

	def accepted_keys(self) -> set[str]:
		return set(self.canonical_required_inputs()) | set(self.stored_values)


@dataclass(frozen=True, slots=True)
class WaitSpec:
	seconds: int
	kind: AlertKindEnum


# ── Recipe ──────────────────────────────────────────────────────────────────


class RecipeDefinition(BaseModel):
	model_config = _FROZEN

	recipe_id: str
	name: str
	schema_version: str = "1.0"
	description: str | None = None
	stages: tuple[Stage, ...]
	inputs: tuple[InputDefinition, ...] = ()
	time_inputs: Mapping[str, TimeInputSpec] = Field(default_factory=dict)
	date_inputs: Mapping[str, DateInputSpec] = Field(default_factory=dict)

	@model_validator(mode="after")
	def _validate_structure(self) -> RecipeDefinition:
		if not self.stages:
			raise ValueError("recipe has no stages")

		ids = [stage.id for stage in self.stages]
		if ids != list(range(1, len(ids) + 1)):
			raise ValueError(f"stage ids must be contiguous from 1, got {ids}")

		terminal_ids = [stage.id for stage in self.stages if stage.kind == StageKindEnum.terminal]
		if terminal_ids != [ids[-1]]:
			raise ValueError(f"exactly the last stage must be terminal, got terminal stages {terminal_ids}")

		for stage in self.stages:
			if stage.is_loop and stage.loop_condition is None:
				raise ValueError(f"loop stage {stage.id} has no loop_condition")
			if stage.loop_condition is not None and not stage.is_loop:
				raise ValueError(f"stage {stage.id} declares a loop_condition but is not a loop stage")

		input_ids = {item.id for item in self.inputs}
		for stage in self.stages:
			unknown = set(stage.doses) - input_ids
			if unknown:
				raise ValueError(f"stage {stage.id} doses unknown inputs {sorted(unknown)}")

		for name, spec in {**self.time_inputs, **self.date_inputs}.items():
			if not 1 <= spec.stage <= len(self.stages):
				raise ValueError(f"input type {name} points at unknown stage {spec.stage}")

		if all(stage.auto_complete for stage in self.stages):
			raise ValueError("recipe has no working stage")
		return self

	# ── Stage navigation ─────────────────────────────────────────────────

	def get_stage(self, stage_id: int) -> Stage | None:
		if 1 <= stage_id <= len(self.stages):
			return self.stages[stage_id - 1]
		return None

	def get_next_stage(self, stage_id: int) -> Stage | None:
		return self.get_stage(stage_id + 1)

	@property
	def last_stage(self) -> Stage:
		return self.stages[-1]

	@property
	def completed_stage_id(self) -> int:
		"""One past the terminal stage: the stage id of a completed batch."""
		return self.last_stage.id + 1

	def auto_completed_stages(self) -> list[Stage]:
		leading: list[Stage] = []
		for stage in self.stages:
			if not stage.auto_complete:
				break
			leading.append(stage)
		return leading

	def first_working_stage(self) -> Stage:
		return self.stages[len(self.auto_completed_stages())]

	# ── Dosing ───────────────────────────────────────────────────────────

	def calculate_inputs(self, volume_l: float) -> dict[str, float]:
		return {
			item.id: item.dosing.quantity_for(volume_l)
			for item in self.inputs
			if item.dosing is not None
		}

	def input_unit(self, input_id: str) -> str:
		for item in self.inputs:
			if item.id == input_id:
				return item.unit
		return ""

	# ── Durations ────────────────────────────────────────────────────────

	@staticmethod
	def timer_minutes(stage: Stage, test_mode: bool = False) -> float:
		if stage.timer is None or stage.timer.duration_minutes <= 0:
			return 0.0
		return TEST_MODE_TIMER_MINUTES if test_mode else stage.timer.duration_minutes

	@staticmethod
	def interval_minutes(stage: Stage, test_mode: bool = False) -> float:
		if stage.timer is None or stage.timer.interval_hours is None:
			return 0.0
		return TEST_MODE_INTERVAL_MINUTES if test_mode else stage.timer.interval_hours * 60

	@staticmethod
	def reminder_minutes(stage: Stage, test_mode: bool = False) -> float:
		if stage.reminder is None:
			return 0.0
		return TEST_MODE_INTERVAL_MINUTES if test_mode else stage.reminder.interval_hours * 60

	@staticmethod
	def loop_max_minutes(stage: Stage, test_mode: bool = False) -> float | None:
		if not stage.is_loop or stage.max_loop_duration_hours is None:
			return None
		return TEST_MODE_LOOP_MAX_MINUTES if test_mode else stage.max_loop_duration_hours * 60

	def wait_spec(self, stage: Stage, test_mode: bool = False) -> WaitSpec | None:
		timer_minutes = self.timer_minutes(stage, test_mode)
		if timer_minutes > 0:
			return WaitSpec(seconds=int(round(timer_minutes * 60)), kind=AlertKindEnum.timer)
		loop_minutes = self.loop_max_minutes(stage, test_mode)
		if loop_minutes:
			return WaitSpec(seconds=int(round(loop_minutes * 60)), kind=AlertKindEnum.loop_timeout)
		return None


# ── Catalog / registry ──────────────────────────────────────────────────────


class CheeseType(BaseModel):
	model_config = _FROZEN

	id: str
	name: str
	available: bool = False
	recipe_file: str | None = None


class RecipeRegistry:
	"""Read-only view over the cheese-type catalog and its loaded recipes."""

	def __init__(self, cheese_types: Mapping[str, CheeseType], recipes: Mapping[str, RecipeDefinition]):
		self._cheese_types = MappingProxyType(dict(cheese_types))
		self._recipes = MappingProxyType(dict(recipes))

	@property
	def cheese_types(self) -> Mapping[str, CheeseType]:
		return self._cheese_types

	def lookup(self, recipe_id: str) -> CheeseType | None:
		return self._cheese_types.get(recipe_id.strip().upper())

	def get(self, recipe_id: str) -> RecipeDefinition | None:
		return self._recipes.get(recipe_id.strip().upper())


def _read_yaml(path: Path) -> dict[str, Any]:
	try:
		with path.open("r", encoding="utf-8") as handle:
			data = yaml.safe_load(handle) or {}
	except (OSError, yaml.YAMLError) as exc:
		raise RecipeError(f"cannot read {path}: {exc}") from exc
	if not isinstance(data, dict):
		raise RecipeError(f"{path} must contain a mapping at top level")
	return data


def parse_recipe(data: dict[str, Any]) -> RecipeDefinition:
	try:
		return RecipeDefinition.model_validate(data)
	except ValidationError as exc:
		raise RecipeError(f"invalid recipe {data.get('recipe_id')!r}: {exc}") from exc


def load_recipe(path: Path) -> RecipeDefinition:
	return parse_recipe(_read_yaml(path))


def load_registry(recipes_dir: Path) -> RecipeRegistry:
	catalog = _read_yaml(recipes_dir / "catalog.yml").get("cheese_types") or {}
	if not isinstance(catalog, dict) or not catalog:
		raise RecipeError("catalog.yml declares no cheese_types")

	cheese_types: dict[str, CheeseType] = {}
	recipes: dict[str, RecipeDefinition] = {}
	for raw_id, entry in catalog.items():
		cheese_id = str(raw_id).upper()
		try:
			cheese_type = CheeseType.model_validate({"id": cheese_id, **(entry or {})})
		except ValidationError as exc:
			raise RecipeError(f"invalid cheese type {cheese_id}: {exc}") from exc
		cheese_types[cheese_id] = cheese_type

		if not cheese_type.available:
			continue
		if not cheese_type.recipe_file:
			raise RecipeError(f"available cheese type {cheese_id} has no recipe_file")
		recipe = load_recipe(recipes_dir / cheese_type.recipe_file)
		if recipe.recipe_id.upper() != cheese_id:
			raise RecipeError(f"{cheese_type.recipe_file} declares recipe_id {recipe.recipe_id}, expected {cheese_id}")
		recipes[cheese_id] = recipe

	return RecipeRegistry(cheese_types, recipes)


@lru_cache
def get_recipe_registry() -> RecipeRegistry:
	"""Process-wide registry, loaded once from ``settings.recipes_dir``."""
	return load_registry(Path(get_settings().recipes_dir))
