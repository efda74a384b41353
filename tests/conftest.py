"""Shared pytest fixtures: in-memory batch store, fake notification client, async test client."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from app.config import Settings, get_settings
from app.dependencies import (
	get_alert_coordinator,
	get_batch_locks,
	get_batch_repository,
	get_clock,
	get_registry,
)
from app.main import app
from app.models.enums import BatchStatusEnum, HistoryActionEnum
from app.schemas.batch import BatchLogEntry, BatchRecord, HistoryEntry
from app.services.alert_coordinator import AlertCoordinator, NotificationContext, ScheduleResult
from app.services.batch_service import BatchService
from app.services.errors import ConcurrentUpdateError
from app.services.locks import BatchLocks
from app.services.recipe import RecipeDefinition, RecipeRegistry, load_registry
from app.services.stage_engine import StageEngine

RECIPES_DIR = Path(__file__).resolve().parents[1] / "app" / "recipes"
START = datetime(2026, 3, 10, 13, 0, tzinfo=UTC)


class MutableClock:
	def __init__(self, now: datetime) -> None:
		self.now = now

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **delta: float) -> datetime:
		self.now = self.now + timedelta(**delta)
		return self.now


class InMemoryBatchRepository:
	"""Repository double with the same version check as the SQL implementation."""

	def __init__(self) -> None:
		self.batches: dict[uuid.UUID, BatchRecord] = {}
		self.logs: list[BatchLogEntry] = []
		self.conflict_next_update = False
		self.commits = 0

	async def get_batch(self, batch_id: uuid.UUID) -> BatchRecord | None:
		return self.batches.get(batch_id)

	async def create_batch(self, record: BatchRecord) -> BatchRecord:
		stored = record.model_copy(update={"version": 1, "updated_at": record.started_at})
		self.batches[stored.id] = stored
		return stored

	async def update_batch(self, batch_id: uuid.UUID, fields: dict[str, Any], expected_version: int) -> BatchRecord:
		current = self.batches.get(batch_id)
		if self.conflict_next_update or current is None or current.version != expected_version:
			self.conflict_next_update = False
			raise ConcurrentUpdateError(f"batch {batch_id} changed since version {expected_version}")
		updated = current.model_copy(update={**fields, "version": current.version + 1})
		self.batches[batch_id] = updated
		return updated

	async def commit(self) -> None:
		self.commits += 1

	async def append_log(self, entry: BatchLogEntry) -> None:
		self.logs.append(entry)

	async def list_active(self, include_paused: bool = False) -> list[BatchRecord]:
		statuses = {BatchStatusEnum.active, BatchStatusEnum.paused} if include_paused else {BatchStatusEnum.active}
		batches = [batch for batch in self.batches.values() if batch.status in statuses]
		return sorted(batches, key=lambda batch: batch.started_at, reverse=True)

	async def list_logs(self, batch_id: uuid.UUID, limit: int = 200) -> list[BatchLogEntry]:
		return [entry for entry in self.logs if entry.batch_id == batch_id][:limit]

	def actions(self, batch_id: uuid.UUID) -> list[str]:
		return [entry.action for entry in self.logs if entry.batch_id == batch_id]

	def place_at_stage(self, batch_id: uuid.UUID, stage_id: int, started_at: datetime, **fields: Any) -> BatchRecord:
		"""Jump a stored batch straight to ``stage_id`` for gate tests on later stages."""
		current = self.batches[batch_id]
		history = [*current.history, HistoryEntry(stage_id=stage_id, action=HistoryActionEnum.start, timestamp=started_at)]
		updated = current.model_copy(
			update={
				"current_stage_id": stage_id,
				"history": history,
				"active_timers": [],
				"active_reminders": [],
				**fields,
			}
		)
		self.batches[batch_id] = updated
		return updated


class FakeNotificationClient:
	def __init__(self, *, permission_denied: bool = False) -> None:
		self.permission_denied = permission_denied
		self.refuse_cancel = False
		self.scheduled: list[dict[str, Any]] = []
		self.cancelled: list[str] = []

	async def schedule_reminder(
		self,
		context: NotificationContext,
		message: str,
		fire_at: datetime,
		*,
		request_time: datetime | None = None,
	) -> ScheduleResult:
		if self.permission_denied:
			return ScheduleResult(permission_denied=True)
		reminder_id = f"alert-{len(self.scheduled) + 1}"
		self.scheduled.append({"id": reminder_id, "message": message, "fire_at": fire_at})
		return ScheduleResult(reminder_id=reminder_id)

	async def cancel_reminder(self, context: NotificationContext, reminder_id: str) -> bool:
		if self.refuse_cancel:
			return False
		self.cancelled.append(reminder_id)
		return True


@pytest.fixture
def settings() -> Settings:
	"""Settings isolated from the developer's .env and environment overrides."""
	return Settings(_env_file=None, test_mode=False, redis_url="", anthropic_api_key="")


@pytest.fixture
def registry() -> RecipeRegistry:
	return load_registry(RECIPES_DIR)


@pytest.fixture
def recipe(registry: RecipeRegistry) -> RecipeDefinition:
	loaded = registry.get("QUEIJO_NETE")
	assert loaded is not None
	return loaded


@pytest.fixture
def clock() -> MutableClock:
	return MutableClock(START)


@pytest.fixture
def repository() -> InMemoryBatchRepository:
	return InMemoryBatchRepository()


@pytest.fixture
def notifier() -> FakeNotificationClient:
	return FakeNotificationClient()


@pytest.fixture
def notification_context() -> NotificationContext:
	return NotificationContext(api_endpoint="https://api.example.test/", api_access_token="token-123")


@pytest.fixture
def alerts(notifier: FakeNotificationClient, clock: MutableClock) -> AlertCoordinator:
	return AlertCoordinator(notifier, clock=clock, test_mode=False)  # type: ignore[arg-type]


@pytest.fixture
def batch_service(
	repository: InMemoryBatchRepository,
	registry: RecipeRegistry,
	alerts: AlertCoordinator,
	clock: MutableClock,
	settings: Settings,
) -> BatchService:
	return BatchService(repository, registry, locks=BatchLocks(), alerts=alerts, clock=clock, settings=settings)


@pytest.fixture
def engine(
	repository: InMemoryBatchRepository,
	registry: RecipeRegistry,
	alerts: AlertCoordinator,
	clock: MutableClock,
	settings: Settings,
) -> StageEngine:
	return StageEngine(repository, registry, locks=BatchLocks(), alerts=alerts, clock=clock, settings=settings)


@pytest.fixture
async def started_batch(batch_service: BatchService) -> BatchRecord:
	"""A fresh 100 L batch sitting on the first working stage."""
	result = await batch_service.start(100, 32, 6.5)
	assert result.success, result.message
	assert result.batch is not None
	return result.batch


@pytest.fixture
async def client(
	repository: InMemoryBatchRepository,
	registry: RecipeRegistry,
	alerts: AlertCoordinator,
	clock: MutableClock,
	settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
	"""HTTPX async client with lifespan disabled and the batch store kept in memory."""

	app.dependency_overrides[get_batch_repository] = lambda: repository
	app.dependency_overrides[get_registry] = lambda: registry
	app.dependency_overrides[get_clock] = lambda: clock
	app.dependency_overrides[get_alert_coordinator] = lambda: alerts
	app.dependency_overrides[get_batch_locks] = lambda: BatchLocks()
	app.dependency_overrides[get_settings] = lambda: settings
	original_lifespan = app.router.lifespan_context

	@asynccontextmanager
	async def noop_lifespan(_: Any) -> AsyncGenerator[None, None]:
		yield

	app.router.lifespan_context = noop_lifespan

	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://test") as test_client:
		yield test_client

	app.router.lifespan_context = original_lifespan
	app.dependency_overrides.clear()
