"""FastAPI dependencies: per-request construction of the workflow services."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import get_db
from app.services.alert_coordinator import AlertCoordinator, NotificationClient
from app.services.batch_service import BatchService
from app.services.command_service import CommandService
from app.services.interpreter_service import InterpreterService
from app.services.locks import BatchLocks
from app.services.recipe import RecipeRegistry, get_recipe_registry
from app.services.repository import BatchRepository, SqlBatchRepository
from app.services.stage_engine import StageEngine
from app.services.timers import Clock, utc_now


async def get_batch_repository(db: AsyncSession = Depends(get_db)) -> BatchRepository:
	return SqlBatchRepository(db)


def get_registry() -> RecipeRegistry:
	return get_recipe_registry()


def get_clock() -> Clock:
	return utc_now


def get_batch_locks(request: Request) -> BatchLocks:
	return BatchLocks(getattr(request.app.state, "redis", None))


def get_alert_coordinator(
	clock: Clock = Depends(get_clock),
	settings: Settings = Depends(get_settings),
) -> AlertCoordinator:
	client = NotificationClient(
		timeout_seconds=settings.notification_timeout_seconds,
		timezone=settings.timezone,
		locale=settings.alert_locale,
	)
	return AlertCoordinator(client, clock=clock, test_mode=settings.test_mode)


def get_interpreter(settings: Settings = Depends(get_settings)) -> InterpreterService:
	return InterpreterService(settings)


def get_batch_service(
	repository: BatchRepository = Depends(get_batch_repository),
	registry: RecipeRegistry = Depends(get_registry),
	locks: BatchLocks = Depends(get_batch_locks),
	alerts: AlertCoordinator = Depends(get_alert_coordinator),
	clock: Clock = Depends(get_clock),
	settings: Settings = Depends(get_settings),
) -> BatchService:
	return BatchService(repository, registry, locks=locks, alerts=alerts, clock=clock, settings=settings)


def get_stage_engine(
	repository: BatchRepository = Depends(get_batch_repository),
	registry: RecipeRegistry = Depends(get_registry),
	locks: BatchLocks = Depends(get_batch_locks),
	alerts: AlertCoordinator = Depends(get_alert_coordinator),
	clock: Clock = Depends(get_clock),
	settings: Settings = Depends(get_settings),
) -> StageEngine:
	return StageEngine(repository, registry, locks=locks, alerts=alerts, clock=clock, settings=settings)


def get_command_service(
	batches: BatchService = Depends(get_batch_service),
	engine: StageEngine = Depends(get_stage_engine),
	interpreter: InterpreterService = Depends(get_interpreter),
	settings: Settings = Depends(get_settings),
) -> CommandService:
	return CommandService(batches, engine, interpreter, settings)
